import re
from typing import Any, NamedTuple, Optional

from library_lending.errors import InvalidInputError
from library_lending.models import GENRES

# Reason codes
MISSING = "missing"
INVALID_FORMAT = "invalid_format"
INVALID_GENRE = "invalid_genre"
OUT_OF_RANGE = "out_of_range"
TOO_SHORT = "too_short"
TOO_LONG = "too_long"
NOT_AN_INTEGER = "not_an_integer"

USER_PREFIX = "usr"
BOOK_PREFIX = "bk"
BORROWING_PREFIX = "brw"


class ValidationResult(NamedTuple):
    ok: bool
    reason: Optional[str] = None


PASS = ValidationResult(True)


def fail(reason: str) -> ValidationResult:
    return ValidationResult(False, reason)


def require(result: ValidationResult, field: str) -> None:
    """Raise InvalidInputError for a failed check, naming the field and reason."""
    if not result.ok:
        raise InvalidInputError(
            "Invalid request parameters",
            details={"field": field, "reason": result.reason},
        )


class IdentifierValidator:
    """Identifiers are a literal prefix, an underscore and 6 ASCII alphanumerics."""

    _SUFFIX = r"[A-Za-z0-9]{6}"

    @staticmethod
    def validate(value: Optional[str], prefix: str) -> ValidationResult:
        if not value:
            return fail(MISSING)
        if not isinstance(value, str):
            return fail(INVALID_FORMAT)
        if re.fullmatch(re.escape(prefix) + "_" + IdentifierValidator._SUFFIX, value) is None:
            return fail(INVALID_FORMAT)
        return PASS

    @staticmethod
    def user_id(value: Optional[str]) -> ValidationResult:
        return IdentifierValidator.validate(value, USER_PREFIX)

    @staticmethod
    def book_id(value: Optional[str]) -> ValidationResult:
        return IdentifierValidator.validate(value, BOOK_PREFIX)

    @staticmethod
    def borrowing_id(value: Optional[str]) -> ValidationResult:
        return IdentifierValidator.validate(value, BORROWING_PREFIX)


class ISBNValidator:
    """Shape check for the hyphenated ISBN-13 form used by the catalog (978-D-DDDD-DDDD-D).

    Only the shape is checked, not the checksum digit.
    """

    _PATTERN = re.compile(r"978-[0-9]-[0-9]{4}-[0-9]{4}-[0-9]")

    @staticmethod
    def validate(isbn: Optional[str]) -> ValidationResult:
        if not isbn:
            return fail(MISSING)
        if not isinstance(isbn, str) or ISBNValidator._PATTERN.fullmatch(isbn) is None:
            return fail(INVALID_FORMAT)
        return PASS


class EmailValidator:
    _PATTERN = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")

    @staticmethod
    def validate(email: Optional[str]) -> ValidationResult:
        if not email:
            return fail(MISSING)
        if not isinstance(email, str) or EmailValidator._PATTERN.fullmatch(email) is None:
            return fail(INVALID_FORMAT)
        return PASS


class TextValidator:
    """Length checks for free-text fields."""

    @staticmethod
    def validate(text: Optional[str], min_length: int = 1, max_length: Optional[int] = None) -> ValidationResult:
        if text is None:
            return fail(MISSING)
        if not isinstance(text, str):
            return fail(INVALID_FORMAT)
        t = text.strip()
        if not t:
            return fail(MISSING)
        if len(t) < min_length:
            return fail(TOO_SHORT)
        if max_length is not None and len(t) > max_length:
            return fail(TOO_LONG)
        return PASS

    @staticmethod
    def name(value: Optional[str]) -> ValidationResult:
        return TextValidator.validate(value, max_length=100)

    @staticmethod
    def title(value: Optional[str]) -> ValidationResult:
        return TextValidator.validate(value, max_length=200)

    @staticmethod
    def author(value: Optional[str]) -> ValidationResult:
        return TextValidator.validate(value, max_length=100)

    @staticmethod
    def password(value: Optional[str]) -> ValidationResult:
        # passwords are not stripped
        if not value:
            return fail(MISSING)
        if len(value) < 8:
            return fail(TOO_SHORT)
        return PASS


def validate_genre(genre: Optional[str]) -> ValidationResult:
    if not genre:
        return fail(MISSING)
    return PASS if genre in GENRES else fail(INVALID_GENRE)


def validate_int_range(value: Any, minimum: Optional[int] = None, maximum: Optional[int] = None) -> ValidationResult:
    if value is None:
        return fail(MISSING)
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        return fail(NOT_AN_INTEGER)
    if minimum is not None and value < minimum:
        return fail(OUT_OF_RANGE)
    if maximum is not None and value > maximum:
        return fail(OUT_OF_RANGE)
    return PASS


def validate_duration_days(value: Any, maximum: int = 30) -> ValidationResult:
    return validate_int_range(value, 1, maximum)


MAX_TOTAL_COPIES = 10_000


def validate_total_copies(value: Any) -> ValidationResult:
    return validate_int_range(value, 1, MAX_TOTAL_COPIES)


def validate_publication_year(value: Any) -> ValidationResult:
    return validate_int_range(value, 1000, 2100)
