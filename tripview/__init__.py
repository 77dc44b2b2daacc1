"""
tripview - reactive aggregation over joined trip data.
"""

__version__ = "0.1.0"
