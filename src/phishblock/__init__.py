"""PhishBlock - anchoring and archival of community phishing reports."""

__version__ = "0.3.0"
