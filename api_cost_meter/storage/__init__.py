"""
SQLite-backed storage for events, pricing rules, budgets and alerts.
"""
