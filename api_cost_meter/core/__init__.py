"""
Core modules for API Cost Meter.

This package contains cost calculation, ingestion, reporting, anomaly
detection, optimization suggestions and budget management.
"""
