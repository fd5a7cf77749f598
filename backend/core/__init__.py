"""
Consistency engine: sequence allocation, counter sync, propagation, caching
"""
