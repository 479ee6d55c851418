"""
First-Run Pairing

Collects how the agent pairs with the phone when no session is stored:
scan a code from the phone's linked-devices screen, or type a numeric
code issued for the bot's phone number.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r'^\+?[1-9]\d{9,14}$')
STRIP_PATTERN = re.compile(r'[\s\-\(\)]')

# Country code + area code + subscriber number
MIN_PHONE_DIGITS = 10
# Area code + 9-digit mobile, written without the country code
NATIONAL_MOBILE_DIGITS = 11


class PairingMethod(str, Enum):
    SCAN_CODE = "scan"
    NUMERIC_CODE = "numeric"


@dataclass(frozen=True)
class PairingConfig:
    """Bootstrap choice, fixed for the rest of the process"""
    method: PairingMethod
    phone_number: Optional[str] = None

    def __post_init__(self):
        if self.method is PairingMethod.NUMERIC_CODE and not self.phone_number:
            raise ValueError("Numeric-code pairing requires a phone number")


class InvalidPhoneNumberError(ValueError):
    """Phone number rejected during bootstrap"""


def validate_phone_number(phone: str) -> str:
    """
    Check a phone number and return it with formatting characters removed.

    Raises:
        InvalidPhoneNumberError: Too short, or not a plausible number
    """
    clean = STRIP_PATTERN.sub("", phone or "")
    digits = clean.lstrip("+")

    if not clean:
        raise InvalidPhoneNumberError("Phone number is empty")

    if digits.isdigit() and len(digits) < MIN_PHONE_DIGITS:
        raise InvalidPhoneNumberError(
            f"Phone number is too short ({len(digits)} digits); include area code and "
            f"subscriber number, at least {MIN_PHONE_DIGITS} digits"
        )

    if not PHONE_PATTERN.match(clean):
        raise InvalidPhoneNumberError(f"Invalid phone number: {phone!r}")

    return clean


def normalize_phone_number(phone: str, default_country_code: str = "55") -> str:
    """
    Validate and reduce a phone number to country code + digits.

    "+55 (11) 98765-4321", "5511987654321" and "11987654321" all become
    "5511987654321". A number typed without "+" whose length matches a
    national mobile number gets the default country code.
    """
    clean = validate_phone_number(phone)
    digits = re.sub(r'\D', "", clean)

    if not clean.startswith("+") and len(digits) == NATIONAL_MOBILE_DIGITS:
        digits = default_country_code + digits

    return digits


class PairingCoordinator:
    """
    Asks the operator for the pairing method and, for numeric pairing,
    the bot's phone number. Invalid answers are re-prompted.
    """

    def __init__(
        self,
        input_func: Callable[[str], str] = input,
        output_func: Callable[[str], None] = print,
        default_country_code: str = "55",
    ):
        self._input = input_func
        self._output = output_func
        self.default_country_code = default_country_code

    def bootstrap(
        self,
        preset_method: Optional[str] = None,
        preset_phone: Optional[str] = None,
    ) -> PairingConfig:
        """
        Produce the PairingConfig, asking only for what is not preset.

        Raises:
            InvalidPhoneNumberError: A preset phone number is invalid
        """
        if preset_method:
            method = PairingMethod(preset_method)
            logger.info(f"Using configured pairing method: {method.value}")
        else:
            method = self.choose_method()

        if method is PairingMethod.SCAN_CODE:
            return PairingConfig(method=method)

        if preset_phone:
            phone = normalize_phone_number(preset_phone, self.default_country_code)
            logger.info(f"Using configured phone number: +{phone}")
        else:
            phone = self.collect_phone_number()

        return PairingConfig(method=method, phone_number=phone)

    def choose_method(self) -> PairingMethod:
        self._output("\n🔐 CONNECTION METHOD\n")
        self._output("Choose how to link the bot:")
        self._output("1️⃣  Scan code (from the phone's linked devices screen)")
        self._output("2️⃣  Pairing code (typed on the phone)")

        while True:
            choice = self._input("\n💡 Enter 1 for scan code or 2 for pairing code: ").strip()

            if choice == "1":
                return PairingMethod.SCAN_CODE
            if choice == "2":
                return PairingMethod.NUMERIC_CODE

            self._output("❌ Invalid option. Enter 1 or 2.")

    def collect_phone_number(self) -> str:
        self._output("\n📱 BOT NUMBER\n")
        self._output("Enter the number the bot will run on.")
        self._output("📋 Accepted: +5511999999999, 5511999999999 or 11999999999")

        while True:
            answer = self._input("\n📞 Phone number: ").strip()

            try:
                phone = normalize_phone_number(answer, self.default_country_code)
            except InvalidPhoneNumberError as e:
                logger.debug(f"Rejected phone number input: {e}")
                self._output(f"❌ {e}")
                self._output("💡 Example: +5511987654321")
                continue

            return phone
