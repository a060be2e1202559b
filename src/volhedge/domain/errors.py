from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum


class ErrorCode(StrEnum):
    INVALID_PARAMS = "InvalidParams"
    MATH_OVERFLOW = "MathOverflow"
    VOL_OUT_OF_RANGE = "VolOutOfRange"

    ORACLE_NOT_READY = "OracleNotReady"
    ORACLE_DEGRADED_HEDGE_BLOCKED = "OracleDegradedHedgeBlocked"

    POLICY_COOLDOWN = "PolicyCooldown"
    HEDGE_TOO_SOON = "HedgeTooSoon"
    DRIFT_NOT_MET = "DriftNotMet"

    NO_OUTSTANDING_REQUEST = "NoOutstandingRequest"
    WRONG_REQUEST_ID = "WrongRequestId"

    CAP_EXCEEDED = "CapExceeded"
    LEVERAGE_EXCEEDED = "LeverageExceeded"
    RESERVE_TOO_LOW = "ReserveTooLow"

    UNAUTHORIZED = "Unauthorized"
    PAUSED = "Paused"
    KEEPER_RATE_LIMITED = "KeeperRateLimited"


ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.INVALID_PARAMS: "Invalid parameters",
    ErrorCode.MATH_OVERFLOW: "Math overflow",
    ErrorCode.VOL_OUT_OF_RANGE: "Volatility out of range",
    ErrorCode.ORACLE_NOT_READY: "Oracle not ready / missing price",
    ErrorCode.ORACLE_DEGRADED_HEDGE_BLOCKED: "Oracle degraded: hedge blocked unless extreme drift",
    ErrorCode.POLICY_COOLDOWN: "Policy update cooldown not met",
    ErrorCode.HEDGE_TOO_SOON: "Hedge request too soon (min interval not met)",
    ErrorCode.DRIFT_NOT_MET: "Drift not met (price move within band)",
    ErrorCode.NO_OUTSTANDING_REQUEST: "No outstanding hedge request to confirm",
    ErrorCode.WRONG_REQUEST_ID: "Wrong request id",
    ErrorCode.CAP_EXCEEDED: "Cap exceeded",
    ErrorCode.LEVERAGE_EXCEEDED: "Leverage exceeded",
    ErrorCode.RESERVE_TOO_LOW: "Reserve too low (slashing buffer below minimum)",
    ErrorCode.UNAUTHORIZED: "Unauthorized",
    ErrorCode.PAUSED: "Position is paused",
    ErrorCode.KEEPER_RATE_LIMITED: "Keeper rate limited",
}

# Expected outcomes the caller simply retries later (new quote, more ticks, more drift, next epoch).
RETRYABLE_CODES = frozenset(
    {
        ErrorCode.ORACLE_NOT_READY,
        ErrorCode.ORACLE_DEGRADED_HEDGE_BLOCKED,
        ErrorCode.POLICY_COOLDOWN,
        ErrorCode.HEDGE_TOO_SOON,
        ErrorCode.DRIFT_NOT_MET,
        ErrorCode.KEEPER_RATE_LIMITED,
    }
)


class EngineError(RuntimeError):
    code: ErrorCode = ErrorCode.INVALID_PARAMS

    def __init__(self, message: str | None = None, **context: object) -> None:
        super().__init__(message or ERROR_MESSAGES[self.code])
        self.context: Mapping[str, object] = dict(context)

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    def as_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "error_code": str(self.code),
            "error_message": str(self),
            "retryable": self.retryable,
        }
        payload.update({key: str(value) for key, value in self.context.items()})
        return payload


class InvalidParams(EngineError):
    code = ErrorCode.INVALID_PARAMS


class MathOverflow(EngineError):
    code = ErrorCode.MATH_OVERFLOW


class VolOutOfRange(EngineError):
    code = ErrorCode.VOL_OUT_OF_RANGE


class OracleNotReady(EngineError):
    code = ErrorCode.ORACLE_NOT_READY


class OracleDegradedHedgeBlocked(EngineError):
    code = ErrorCode.ORACLE_DEGRADED_HEDGE_BLOCKED


class PolicyCooldown(EngineError):
    code = ErrorCode.POLICY_COOLDOWN


class HedgeTooSoon(EngineError):
    code = ErrorCode.HEDGE_TOO_SOON


class DriftNotMet(EngineError):
    code = ErrorCode.DRIFT_NOT_MET


class NoOutstandingRequest(EngineError):
    code = ErrorCode.NO_OUTSTANDING_REQUEST


class WrongRequestId(EngineError):
    code = ErrorCode.WRONG_REQUEST_ID


class CapExceeded(EngineError):
    code = ErrorCode.CAP_EXCEEDED


class LeverageExceeded(EngineError):
    code = ErrorCode.LEVERAGE_EXCEEDED


class ReserveTooLow(EngineError):
    code = ErrorCode.RESERVE_TOO_LOW


class Unauthorized(EngineError):
    code = ErrorCode.UNAUTHORIZED


class Paused(EngineError):
    code = ErrorCode.PAUSED


class KeeperRateLimited(EngineError):
    code = ErrorCode.KEEPER_RATE_LIMITED
