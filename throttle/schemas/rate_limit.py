"""Pydantic schemas for the rate limit HTTP contract.

Wire names are camelCase to stay compatible with existing web clients; Python
attributes stay snake_case.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CheckRequest(_CamelModel):
    """Body of a rate limit check.

    Both fields are optional at the schema level so a missing field is
    reported with the same message as an empty one.
    """

    action: str | None = Field(
        default=None,
        description="Action category: signIn, signUp, passwordReset or api (unknown values use api).",
    )
    identifier: str | None = Field(
        default=None,
        description="Caller identifier scoping the limit (email, IP, user id).",
    )


class CheckAllowedResponse(_CamelModel):
    limited: Literal[False] = False
    remaining_attempts: int = Field(
        ...,
        alias="remainingAttempts",
        description="Attempts left in the current window after this one.",
    )


class CheckDeniedResponse(_CamelModel):
    limited: Literal[True] = True
    retry_after_ms: int = Field(
        ...,
        alias="retryAfterMs",
        description="Milliseconds until the block lifts.",
    )


class StatusResponse(_CamelModel):
    attempts: int = Field(..., description="Attempts counted in the current window.")
    is_blocked: bool = Field(..., alias="isBlocked")
    blocked_until_ms: int | None = Field(
        default=None,
        alias="blockedUntilMs",
        description="Epoch milliseconds when the active block ends.",
    )
    remaining_attempts: int = Field(..., alias="remainingAttempts")


class ResetResponse(_CamelModel):
    reset: bool = Field(..., description="Whether a record existed and was removed.")


class PruneRequest(_CamelModel):
    older_than_ms: int = Field(
        ...,
        alias="olderThanMs",
        description="Delete records whose window opened more than this many ms ago.",
    )


class PruneResponse(_CamelModel):
    deleted: int = Field(..., description="Number of records removed.")


class ErrorResponse(_CamelModel):
    error: str = Field(..., description="Human-readable error message.")
    code: str | None = Field(default=None, description="Machine-readable error code.")
    request_id: str | None = Field(default=None, description="Correlation id of the request.")
