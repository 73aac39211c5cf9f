"""Notification dispatch package.

Renders attendance, invitation, leave and fee messages, sends them
through the rich (WhatsApp) channel with plain-SMS fallback, and records
the outcome on the owning delivery record.
"""
