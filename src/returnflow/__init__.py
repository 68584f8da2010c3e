"""returnflow - Return & Exchange Case Resolution Engine.

Authoritative state machine for customer return/exchange requests raised
against tracked parcels. Every command returns a full case snapshot with
freshly derived action permissions.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
