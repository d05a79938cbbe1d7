"""
Domain layer - error taxonomy shared by every resilience component.

IMPORTANT: This layer must NOT depend on infrastructure or adapters.
"""
