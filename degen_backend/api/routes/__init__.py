"""
API route modules.
"""

from . import admin, leaderboard, payouts, scores, state

__all__ = ["admin", "leaderboard", "payouts", "scores", "state"]
