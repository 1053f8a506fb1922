"""CareBridge care-coordination service: goals, approvals and live notifications."""
