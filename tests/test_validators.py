import pytest

from library_lending.errors import InvalidInputError
from library_lending.validators import (
    INVALID_FORMAT,
    INVALID_GENRE,
    MISSING,
    NOT_AN_INTEGER,
    OUT_OF_RANGE,
    TOO_LONG,
    TOO_SHORT,
    EmailValidator,
    IdentifierValidator,
    ISBNValidator,
    TextValidator,
    require,
    validate_duration_days,
    validate_genre,
    validate_publication_year,
    validate_total_copies,
)


@pytest.mark.parametrize("value", ["usr_a1b2c3", "usr_000001", "usr_ABCdef"])
def test_valid_user_ids(value):
    assert IdentifierValidator.user_id(value).ok


@pytest.mark.parametrize(
    "value, reason",
    [
        ("", MISSING),
        (None, MISSING),
        ("bk_a1b2c3", INVALID_FORMAT),
        ("usr_a1b2c", INVALID_FORMAT),
        ("usr_a1b2c3d", INVALID_FORMAT),
        ("usr-a1b2c3", INVALID_FORMAT),
        ("usr_a1b2-3", INVALID_FORMAT),
        (123456, INVALID_FORMAT),
    ],
)
def test_invalid_user_ids(value, reason):
    result = IdentifierValidator.user_id(value)
    assert not result.ok
    assert result.reason == reason


def test_book_and_borrowing_prefixes():
    assert IdentifierValidator.book_id("bk_x1y2z3").ok
    assert not IdentifierValidator.book_id("usr_x1y2z3").ok
    assert IdentifierValidator.borrowing_id("brw_x1y2z3").ok


@pytest.mark.parametrize("isbn", ["978-0-7432-7356-5", "978-1-2345-6789-0"])
def test_isbn_shape(isbn):
    assert ISBNValidator.validate(isbn).ok


@pytest.mark.parametrize("isbn", ["9780743273565", "979-0-7432-7356-5", "978-0-743-27356-5", "978-0-7432-7356-X"])
def test_isbn_rejects_other_shapes(isbn):
    assert ISBNValidator.validate(isbn).reason == INVALID_FORMAT


def test_email():
    assert EmailValidator.validate("reader@example.com").ok
    assert EmailValidator.validate("no-at-sign.example.com").reason == INVALID_FORMAT
    assert EmailValidator.validate("a b@example.com").reason == INVALID_FORMAT
    assert EmailValidator.validate("").reason == MISSING


def test_text_lengths():
    assert TextValidator.name("Ada").ok
    assert TextValidator.name("   ").reason == MISSING
    assert TextValidator.name("x" * 101).reason == TOO_LONG
    assert TextValidator.title("x" * 200).ok
    assert TextValidator.title("x" * 201).reason == TOO_LONG
    assert TextValidator.password("short").reason == TOO_SHORT
    assert TextValidator.password("long enough").ok


def test_genre():
    assert validate_genre("fiction").ok
    assert validate_genre("poetry").reason == INVALID_GENRE
    assert validate_genre(None).reason == MISSING


@pytest.mark.parametrize(
    "value, reason",
    [(0, OUT_OF_RANGE), (31, OUT_OF_RANGE), (-1, OUT_OF_RANGE), ("7", NOT_AN_INTEGER), (True, NOT_AN_INTEGER), (None, MISSING)],
)
def test_duration_rejections(value, reason):
    assert validate_duration_days(value).reason == reason


def test_duration_bounds():
    assert validate_duration_days(1).ok
    assert validate_duration_days(30).ok
    assert not validate_duration_days(30, maximum=21).ok


def test_copies_and_year():
    assert validate_total_copies(1).ok
    assert validate_total_copies(0).reason == OUT_OF_RANGE
    assert validate_total_copies(10_000).ok
    assert validate_total_copies(10**20).reason == OUT_OF_RANGE
    assert validate_publication_year(1965).ok
    assert validate_publication_year(999).reason == OUT_OF_RANGE
    assert validate_publication_year(2101).reason == OUT_OF_RANGE


def test_require_raises_with_field_and_reason():
    with pytest.raises(InvalidInputError) as excinfo:
        require(IdentifierValidator.book_id("nope"), "bookId")
    assert excinfo.value.status_code == 400
    assert excinfo.value.details == {"field": "bookId", "reason": INVALID_FORMAT}


def test_require_passes_silently():
    require(IdentifierValidator.book_id("bk_000001"), "bookId")
