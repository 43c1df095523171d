"""
Core infrastructure for CampusGuard: configuration, logging, database and clock
"""
