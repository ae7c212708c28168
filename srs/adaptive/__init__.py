"""
Adaptive scheduling engine
"""
