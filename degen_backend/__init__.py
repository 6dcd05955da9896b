"""
Flappy Degen Rewards Backend

Backend service for the Flappy Degen game that provides:
- Fee deposit ingestion from the Solana blockchain
- Threshold-triggered in-game events
- Daily payout scheduling and on-chain settlement
- REST API for game state, scores and leaderboards
"""

__version__ = "0.1.0"
__author__ = "Flappy Degen Team"
