"""
Gateway Package

The only path from the view-model to a transport. The view-model depends on
the abstract contract; concrete gateways are supplied by the caller.
"""

from .base import GatewayResponse, MutationGateway
from .mock import MockGateway
from .http import HttpMutationGateway

__all__ = ['GatewayResponse', 'MutationGateway', 'MockGateway', 'HttpMutationGateway']
