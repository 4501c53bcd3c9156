"""Billing, payments, memberships and analytics domain logic."""
