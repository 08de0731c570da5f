"""
Adapters between the gateway and the outside world: destination
resolution from route-service headers and the upstream HTTP client.
"""
