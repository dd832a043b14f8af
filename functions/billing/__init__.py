"""Stripe billing-event reconciliation."""
