"""Anonymous content-addressed file drop with Nostr-driven replication."""

__version__ = "0.3.0"
