"""
tourney
Tournament bracket and match lifecycle engine.
"""
__version__ = "1.0.0"
