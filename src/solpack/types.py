from typing import Any

from borsh_construct.enum import _rust_enum
from sumtypes import constructor, sumtype


def is_variant(enum, type: str) -> bool:
    return type == enum.__class__.__name__


@sumtype
class Result:
    """Outcome of an operation whose failures are values rather than exceptions.

    Packing failures and on-chain execution failures are reported this way so
    callers can decide whether to shrink a batch, resend or give up.
    """

    Ok = constructor("value")
    Err = constructor("error")


def ok(value: Any = None) -> Result:
    return Result.Ok(value)


def err(error: Any) -> Result:
    return Result.Err(error)


def is_ok(result: Result) -> bool:
    return is_variant(result, "Ok")


def is_err(result: Result) -> bool:
    return is_variant(result, "Err")


def unwrap(result: Result) -> Any:
    if is_err(result):
        raise ValueError(f"Called unwrap on an error result: {result.error}")
    return result.value


def unwrap_err(result: Result) -> Any:
    if is_ok(result):
        raise ValueError(f"Called unwrap_err on an ok result: {result.value}")
    return result.error


@_rust_enum
class PackingErrorKind:
    ScaffoldingTooLarge = constructor()
    ScaffoldingTooManyKeys = constructor()
    InstructionTooLarge = constructor()
    InstructionTooManyKeys = constructor()
