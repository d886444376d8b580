"""Room relay: invite-only group messaging with acknowledged, deduplicated delivery."""

__version__ = "0.1.0"
