"""Supervisor and reverse proxy in front of the Clawdbot gateway."""
