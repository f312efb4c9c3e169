# bgladder/__init__.py
"""
Leaderboard synchronization engine for a tracked roster of Battlegrounds players.

Scans the paginated upstream ladder, keeps per-season results in a tiered
store, and serves a locally ranked view that is refreshed in the background.
"""
