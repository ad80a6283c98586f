"""
API Cost Meter: metering, cost attribution and analytics for external API calls.
"""

__version__ = "0.1.0"
