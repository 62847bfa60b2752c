"""
DDNS Service - Dynamic DNS for (owner, location) pairs.

This package keeps a DNS name synchronized with the public IP address of an
owner's location. It contains the update server, the administrative tooling
for renaming subdomains, and the client that resolves the public IP by
consensus across several independent authorities.
"""

__version__ = "0.1.0"
__author__ = "DDNS Service Contributors"
