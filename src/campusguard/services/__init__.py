"""
CampusGuard services
"""
