"""Stripe billing events: verification, dedup and dispatch."""
