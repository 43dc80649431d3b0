"""SIP capture building blocks: addresses, packets, IP/TCP reassembly, WebSocket unwrapping and HEP/EEP."""

__version__ = "0.1.0"