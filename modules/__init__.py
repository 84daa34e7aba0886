"""
Launch detection: chain events, event sources, watchers, enrichment and fan-out
"""
