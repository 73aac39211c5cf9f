"""Caller authorization, rate limiting and parent OTP login."""
