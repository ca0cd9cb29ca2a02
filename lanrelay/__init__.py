"""lanrelay: LAN rendezvous and relay hub for browser peers."""

__version__ = "0.1.0"
