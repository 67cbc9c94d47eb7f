"""
CLI Commands for SipGrounds.

Usage:
    flask settlement reconcile --older-than 5   # Settle orders whose payment outcome never arrived
    flask settlement verify-points --user-id 1  # Check a balance against its history
"""
from .settlement import init_app as init_settlement_commands


def init_app(app):
    """Register all CLI commands with the Flask app."""
    init_settlement_commands(app)
