"""Lightweight shared DTOs for relay <-> client communication."""

from .dto import (
    SignalMessage,
    FileStart,
    SESSION_ID,
    JOIN_ROOM,
    LEAVE_ROOM,
    ALL_USERS,
    PEER_LEFT,
    OFFER,
    ANSWER,
    ICE,
    ERROR,
    RELAYED_TYPES,
)

__all__ = [
    "SignalMessage",
    "FileStart",
    "SESSION_ID",
    "JOIN_ROOM",
    "LEAVE_ROOM",
    "ALL_USERS",
    "PEER_LEFT",
    "OFFER",
    "ANSWER",
    "ICE",
    "ERROR",
    "RELAYED_TYPES",
]
