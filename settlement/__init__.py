"""
Payment & Subscription Settlement Engine.

Opens payment intents with the gateway, verifies its confirmations,
advances invoice records through their lifecycle and keeps recurring
subscriptions in step with the gateway.
"""

__version__ = "0.1.0"
