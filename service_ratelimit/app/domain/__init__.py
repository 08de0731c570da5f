"""
Admission pipeline and live configuration for the gateway.
"""
