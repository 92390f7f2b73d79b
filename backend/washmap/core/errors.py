"""Error taxonomy for map building, planning and campaign execution."""

from __future__ import annotations


class WashMapError(Exception):
    """Base class for every domain error raised by the scheduler core."""


class InvalidSpecification(WashMapError):
    """Graph parameters are unusable; the caller has to fix the request."""


class EmptyGraph(WashMapError):
    """The map has no edges, so there is nothing to plan."""


class AmountPolicyError(WashMapError):
    """The split policy produced a non-positive amount or got bad inputs."""


class InsufficientRootBalance(WashMapError):
    """The funding address cannot cover the campaign amount plus gas."""

    def __init__(self, address: str, balance, required) -> None:
        super().__init__(
            f"Address {address} holds {balance}, campaign requires {required}"
        )
        self.address = address
        self.balance = balance
        self.required = required


class TransferFailure(WashMapError):
    """A single transfer failed or timed out; recorded on the task."""


class ClaimConflict(WashMapError):
    """Another worker claimed the task first."""


class InvalidTransition(WashMapError):
    """A status change outside the allowed state machine was requested."""


class UnknownMap(WashMapError):
    pass


class UnknownCampaign(WashMapError):
    pass


class UnknownTask(WashMapError):
    pass


class MapInUse(WashMapError):
    """The map still has campaigns and cannot be deleted."""


class RootAddressInUse(WashMapError):
    """The root address funded another campaign inside the reuse window."""


class StoreError(WashMapError):
    """The persistence backend failed."""


__all__ = [
    "WashMapError",
    "InvalidSpecification",
    "EmptyGraph",
    "AmountPolicyError",
    "InsufficientRootBalance",
    "TransferFailure",
    "ClaimConflict",
    "InvalidTransition",
    "UnknownMap",
    "UnknownCampaign",
    "UnknownTask",
    "MapInUse",
    "RootAddressInUse",
    "StoreError",
]
