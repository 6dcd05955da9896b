"""
Background scheduling: the daily payout scheduler and the worker entry point.
"""
