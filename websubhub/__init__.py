"""WebSub hub: verified subscriptions and signed content fan-out."""

__version__ = "0.1.0"
