"""Billing domain services. Import modules directly, e.g. ``...billing.webhook_service``."""
