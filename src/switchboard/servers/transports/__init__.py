"""Backend transports: single UDP/TCP exchanges and inbound zone transfers."""
