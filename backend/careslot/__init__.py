"""Careslot - provider scheduling, booking ledger and SLA escalation service."""
