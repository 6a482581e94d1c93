import pytest

from flux import codes
from flux.errors import InvalidInputError
from flux.messaging import delivery_code_message, international, whatsapp_url
from flux.models import format_order_code, to_money


def test_generated_code_shape():
    code = codes.generate_code()
    assert len(code) == 6
    assert code.isdigit()


def test_generate_code_custom_alphabet():
    code = codes.generate_code(length=8, alphabet="AB")
    assert len(code) == 8
    assert set(code) <= {"A", "B"}


def test_hash_ignores_whitespace_and_case():
    assert codes.hash_code("123 456") == codes.hash_code("123456")
    assert codes.hash_code("ab12cd") == codes.hash_code("AB12CD")
    assert codes.hash_code("123456") != codes.hash_code("123457")
    assert len(codes.hash_code("123456")) == 64


def test_hashes_match():
    h = codes.hash_code("482913")
    assert codes.hashes_match(codes.hash_code(" 482913 "), h)
    assert not codes.hashes_match(codes.hash_code("482914"), h)


@pytest.mark.parametrize("candidate", ["", None, "12345", "1234567", "12a456"])
def test_check_format_rejects(candidate):
    with pytest.raises(InvalidInputError):
        codes.check_format(candidate)


def test_check_format_normalises():
    assert codes.check_format(" 123 456 ") == "123456"


def test_format_order_code():
    assert format_order_code("0000abcd-0000-0000-0000-000000000000") == "#A000"
    # 0x00ff = 255 -> 255 % 26 = 21 -> "V"
    assert format_order_code("00ff0000-0000-0000-0000-000000000000") == "#V255"
    assert format_order_code("short") == "#????"


def test_to_money_rounds_half_up():
    assert str(to_money("6.005")) == "6.01"
    assert str(to_money(9)) == "9.00"


def test_whatsapp_link_uses_international_number():
    assert international("(64) 98877-6655") == "5564988776655"
    assert international("5564988776655") == "5564988776655"
    url = whatsapp_url("64 98877-6655", delivery_code_message("#A015", "Maria", "123456"))
    assert url.startswith("https://wa.me/5564988776655?text=")
    assert "123456" in url
