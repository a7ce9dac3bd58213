"""Wire protocol: event envelope, event kinds and inbound payload models."""
