"""
Helpers for testing code built on upgr8
"""
