"""
Infrastructure module - logging and outbound notifications.
"""
