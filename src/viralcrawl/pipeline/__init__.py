"""
viralcrawl Pipeline - payload parsing, ingestion, orchestration and stats.
"""
