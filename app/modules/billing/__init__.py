"""Subscription billing: gateway webhook reconciliation and lifecycle sweeps."""
