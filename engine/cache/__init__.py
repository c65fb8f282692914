"""
Cache Module
Key layout, targeted invalidation and operator-triggered warming.
"""
