"""
F&O market data ingestion: option chain, GEX levels and breadth snapshots
polled on market-hours cadences and stored in MongoDB.
"""
# Version
version = "0.1.0"
