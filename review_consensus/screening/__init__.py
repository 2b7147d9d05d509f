"""Screening consensus: decision ledger, conflict detection, adjudication and phase control."""
