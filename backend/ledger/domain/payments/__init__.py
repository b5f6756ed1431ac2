"""Payments domain: configuration, settlement, subscriptions, payouts and the ledger."""
