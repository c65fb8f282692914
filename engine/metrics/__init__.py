"""
Metrics Module
Offline ranking quality metrics over attributed saves.
"""
