"""
SOS alerts and the staff response workflow
"""
