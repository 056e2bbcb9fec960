import hashlib
from decimal import Decimal, InvalidOperation, localcontext
from typing import Iterator, TypeVar

# python insantiates generics separate to function definition
T = TypeVar("T")

# characters people use to group thousands in human readable amounts
THOUSANDS_SEPARATORS = (",", "_", " ", " ")


def chunks(ls: list[T], size: int) -> Iterator[list[T]]:
    """Yield successive `size` sized slices of `ls`"""
    if size < 1:
        raise ValueError(f"Chunk size must be positive, got {size}")
    for i in range(0, len(ls), size):
        yield ls[i : i + size]


def yes_or_no(question: str) -> bool:
    """
    Require y or n (case insenstive) as answer to `question`.
    Defaults to N with no response
    """
    while "the answer is invalid":
        reply = input(f"{question} [y/N]: ")
        if not reply:
            return False
        reply = str(reply).lower().strip()
        if reply[:1] == "y":
            return True
        if reply[:1] == "n":
            return False
    return False


def parse_units(value: str, decimals: int) -> int:
    """
    Convert a human denominated amount ("12.5", "1,000") into an integer count of
    the token's smallest unit. Raises ValueError rather than silently rounding.
    """
    cleaned = str(value).strip()
    for sep in THOUSANDS_SEPARATORS:
        cleaned = cleaned.replace(sep, "")
    if not cleaned:
        raise ValueError("empty amount")
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        raise ValueError(f"not a number: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    if amount < 0:
        raise ValueError(f"negative amount: {value!r}")

    with localcontext() as ctx:
        # uint256 needs 78 digits, keep scaling exact
        ctx.prec = 100
        scaled = amount.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"{value!r} has more than {decimals} decimal places")
    return int(scaled)


def format_units(amount: int, decimals: int) -> str:
    """Inverse of `parse_units`, without trailing zeros"""
    if decimals == 0:
        return str(amount)
    sign = "-" if amount < 0 else ""
    whole, frac = divmod(abs(amount), 10**decimals)
    frac_str = str(frac).rjust(decimals, "0").rstrip("0")
    return f"{sign}{whole}.{frac_str}" if frac_str else f"{sign}{whole}"


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
