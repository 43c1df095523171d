"""
Safety Session Module

Monitored journeys and live-location shares:
- session state machine and conditional persistence
- check-in scheduling with grace-period timeouts
- escalation fan-out to grant recipients and staff
"""
