import pytest

from services.reply_validation_service import (
    is_valid_email, is_valid_phone, is_valid_number, is_valid_cpf, is_valid_date
)
from models.flow_node_data import MenuOption


@pytest.mark.parametrize("value,expected", [
    ("a@b.com", True),
    ("maria.silva+crm@empresa.com.br", True),
    ("not-an-email", False),
    ("a@b", False),
])
def test_email(value, expected):
    assert is_valid_email(value) is expected


@pytest.mark.parametrize("value,expected", [
    ("11999999999", True),
    ("+55 (11) 99999-9999", True),
    ("12345", False),
    ("abc1234567", False),
])
def test_phone(value, expected):
    assert is_valid_phone(value) is expected


def test_number_accepts_decimal_comma():
    assert is_valid_number("10,5")
    assert is_valid_number("-3.2")
    assert not is_valid_number("dez")


def test_cpf_check_digits():
    assert is_valid_cpf("529.982.247-25")
    assert not is_valid_cpf("529.982.247-26")
    assert not is_valid_cpf("111.111.111-11")


def test_date_formats():
    assert is_valid_date("31/12/2026")
    assert is_valid_date("2026-12-31")
    assert not is_valid_date("31/02/2026")


def test_validate_input_rejects_empty(reply_validation_service):
    assert not reply_validation_service.validate_input("   ", "text")
    assert reply_validation_service.validate_input("qualquer coisa", "text")


def test_menu_match_order(reply_validation_service):
    options = [
        MenuOption(id="a", label="Vendas", value="vendas"),
        MenuOption(id="b", label="Suporte", value="2"),
    ]
    # exact value beats the option number
    assert reply_validation_service.match_menu_option("2", options)[0] == 1
    assert reply_validation_service.match_menu_option("1", options)[0] == 0
    assert reply_validation_service.match_menu_option("VENDAS", options)[1].id == "a"
    assert reply_validation_service.match_menu_option(" suporte ", options)[1].id == "b"
    assert reply_validation_service.match_menu_option("3", options) is None
    assert reply_validation_service.match_menu_option("", options) is None


@pytest.mark.parametrize("reply", ["²", "1²", "³"])
def test_menu_superscript_digits_are_not_option_numbers(reply_validation_service, reply):
    options = [MenuOption(id="a", label="Vendas", value="vendas")]
    assert reply_validation_service.match_menu_option(reply, options) is None
