"""Translate domain errors into HTTP responses."""

from __future__ import annotations

import logging

from fastapi import HTTPException

from washmap.clients.balance import BalanceQueryError
from washmap.core.errors import (
    AmountPolicyError,
    ClaimConflict,
    EmptyGraph,
    InsufficientRootBalance,
    InvalidSpecification,
    InvalidTransition,
    MapInUse,
    RootAddressInUse,
    StoreError,
    UnknownCampaign,
    UnknownMap,
    UnknownTask,
)

LOGGER = logging.getLogger(__name__)

STATUS_BY_ERROR = (
    ((UnknownMap, UnknownCampaign, UnknownTask), 404),
    ((MapInUse, RootAddressInUse, InsufficientRootBalance, InvalidTransition, ClaimConflict), 409),
    ((InvalidSpecification, EmptyGraph, AmountPolicyError, ValueError), 400),
    ((StoreError, BalanceQueryError, RuntimeError), 502),
)


def to_http(exc: Exception) -> HTTPException:
    """Map ``exc`` to an ``HTTPException``; unmapped errors become 500."""
    for error_types, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_types):
            if status_code >= 500:
                LOGGER.exception("Upstream failure: %s", exc)
            else:
                LOGGER.warning("Request rejected (%d): %s", status_code, exc)
            return HTTPException(status_code=status_code, detail=str(exc))
    LOGGER.exception("Unhandled error: %s", exc)
    return HTTPException(status_code=500, detail="Internal error")


__all__ = ["to_http"]
