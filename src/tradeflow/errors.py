"""Exception hierarchy shared by the feed, broker, publisher, subscriber and storage layers."""

from __future__ import annotations

from typing import Any


class TradeflowError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(TradeflowError):
    """Invalid or missing configuration. Fatal."""


# --- Feed ---
class FeedConnectionError(TradeflowError):
    """Unrecoverable feed problem (auth, bad URL, rejected subscription, retries exhausted)."""

    def __init__(
        self,
        message: str,
        *,
        pair: str | None = None,
        last_trade_id: int | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.pair = pair
        self.last_trade_id = last_trade_id
        self.attempts = attempts

    def context(self) -> dict[str, Any]:
        return {"pair": self.pair, "last_trade_id": self.last_trade_id, "attempts": self.attempts}


class TransientFeedError(TradeflowError):
    """Connection lost or could not be established; the connector will back off and retry."""


# --- Broker ---
class BrokerError(TradeflowError):
    """Base class for errors raised by broker adapters."""


class TransientBrokerError(BrokerError):
    """Timeout, leader election, connection loss. Safe to retry."""


class RecordRejectedError(BrokerError):
    """The broker refused this record (e.g. too large). Retrying the same record cannot succeed."""


class BrokerAuthError(BrokerError):
    """Authentication or authorization failure. Fatal."""


class OffsetCommitError(BrokerError):
    """Commit refused because the group rebalanced; the new owner will see the records again."""


class PublishError(TradeflowError):
    """Publisher gave up on an event."""

    EXHAUSTED = "exhausted"
    REJECTED = "rejected"
    UNAUTHORIZED = "unauthorized"

    def __init__(
        self,
        message: str,
        *,
        kind: str,
        pair: str,
        trade_id: int,
        attempts: int,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.pair = pair
        self.trade_id = trade_id
        self.attempts = attempts

    @property
    def fatal(self) -> bool:
        return self.kind == self.UNAUTHORIZED

    def context(self) -> dict[str, Any]:
        return {"kind": self.kind, "pair": self.pair, "trade_id": self.trade_id, "attempts": self.attempts}


# --- Storage ---
class StorageError(TradeflowError):
    """Base class for store write failures."""

    transient = False


class TransientStorageError(StorageError):
    """Connection hiccup, I/O error, transaction conflict. The batch can be retried."""

    transient = True


class PermanentStorageError(StorageError):
    """Schema mismatch or data the store will never accept."""


class SubscriberError(TradeflowError):
    """A batch could not be written; offsets were not committed."""

    def __init__(
        self,
        message: str,
        *,
        pair: str | None,
        partition: int | None,
        offset: int | None,
        attempts: int,
    ) -> None:
        super().__init__(message)
        self.pair = pair
        self.partition = partition
        self.offset = offset
        self.attempts = attempts

    def context(self) -> dict[str, Any]:
        return {
            "pair": self.pair,
            "partition": self.partition,
            "offset": self.offset,
            "attempts": self.attempts,
        }
