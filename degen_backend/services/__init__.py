"""
Business services: fee ingestion, threshold events, payouts and settlement.
"""
