"""
Reply Validation Service
Matches contact replies against menu options and validates free-text input.
"""
import re
from datetime import datetime
from typing import Optional, Tuple, List

from utils.log_utils import LogUtil
from models.flow_node_data import MenuOption

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')
PHONE_STRIP_PATTERN = re.compile(r'[\s\-\(\)\.]')
DATE_FORMATS = ("%d/%m/%Y", "%d-%m-%Y", "%Y-%m-%d")


def is_valid_email(value: str) -> bool:
    return EMAIL_PATTERN.match(value) is not None


def is_valid_phone(value: str) -> bool:
    cleaned = PHONE_STRIP_PATTERN.sub('', value)
    if cleaned.startswith('+'):
        cleaned = cleaned[1:]
    return cleaned.isdecimal() and 10 <= len(cleaned) <= 13


def is_valid_number(value: str) -> bool:
    normalized = value.replace(',', '.', 1) if value.count(',') == 1 and '.' not in value else value
    try:
        float(normalized)
        return True
    except (ValueError, TypeError):
        return False


def is_valid_cpf(value: str) -> bool:
    """Brazilian CPF: 11 digits, two check digits, not all digits equal."""
    digits = re.sub(r'\D', '', value)
    if len(digits) != 11 or digits == digits[0] * 11:
        return False
    for position in (9, 10):
        total = sum(int(digits[i]) * ((position + 1) - i) for i in range(position))
        check = (total * 10) % 11
        if check == 10:
            check = 0
        if check != int(digits[position]):
            return False
    return True


def is_valid_date(value: str) -> bool:
    for date_format in DATE_FORMATS:
        try:
            datetime.strptime(value, date_format)
            return True
        except ValueError:
            continue
    return False


class ReplyValidationService:
    """
    Service for validating user replies against input rules and matching them
    against menu options.
    """

    def __init__(self, log_util: LogUtil):
        self.log_util = log_util

    def validate_input(self, reply: Optional[str], validation: str) -> bool:
        """
        Validate a trimmed reply for an input node. Empty replies never pass,
        optional inputs are handled by the caller.
        """
        value = (reply or "").strip()
        if not value:
            return False

        if validation == "email":
            passed = is_valid_email(value)
        elif validation == "phone":
            passed = is_valid_phone(value)
        elif validation == "number":
            passed = is_valid_number(value)
        elif validation == "cpf":
            passed = is_valid_cpf(value)
        elif validation == "date":
            passed = is_valid_date(value)
        else:
            passed = True

        if not passed:
            self.log_util.info(
                service_name="ReplyValidationService",
                message=f"[VALIDATE_REPLY] Reply '{value}' failed {validation} validation"
            )
        return passed

    def match_menu_option(self, reply: Optional[str], options: List[MenuOption]) -> Optional[Tuple[int, MenuOption]]:
        """
        Match a reply against menu options.

        Order:
        1. exact option value
        2. 1-based option number
        3. case-insensitive label

        Returns (index, option) or None.
        """
        value = (reply or "").strip()
        if not value or not options:
            return None

        for index, option in enumerate(options):
            if option.value and value == option.value.strip():
                return index, option

        if value.isdecimal():
            number = int(value)
            if 1 <= number <= len(options):
                return number - 1, options[number - 1]

        lowered = value.lower()
        for index, option in enumerate(options):
            if option.label and lowered == option.label.strip().lower():
                return index, option

        self.log_util.info(
            service_name="ReplyValidationService",
            message=f"[PROCESS_REPLY_MATCH] Reply '{value}' matched none of {len(options)} options"
        )
        return None
