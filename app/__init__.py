"""
                Kitchen Order Relay

Real-time order coordination backend for restaurant and event service:
waitstaff, kitchen, guests and admins share one consistent view of
every order through a role-aware WebSocket fan-out.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
