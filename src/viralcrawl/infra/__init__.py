"""
viralcrawl Infrastructure - relational store and the persisted crawl queue.
"""
