"""
CampusGuard - campus safety sessions, check-ins and SOS alerts
"""

__version__ = "1.0.0"
