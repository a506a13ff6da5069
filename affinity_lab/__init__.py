"""
Affinity Laboratory

Turns raw device-location pings into audience segments and postal-code
affinity profiles.
"""

__version__ = "1.0.0"
