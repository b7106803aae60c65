"""
Communication components for the Compliance Agent.
"""
from compliance_agent.communication.http_client import (
    HttpClient,
    resolve_base_url,
    classify_error_response
)

__all__ = [
    'HttpClient',
    'resolve_base_url',
    'classify_error_response'
]
