"""
Operator Display

Terminal output for the operator: the scan code to link the device, the
numeric pairing code to type on the phone, and connection milestones.
This is informational only and never part of the protocol.
"""

import logging
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class OperatorDisplay:
    """
    Prints pairing prompts and status to the terminal.

    The scan code is printed as the raw string the transport produced;
    turning it into an image is left to whatever tool the operator uses.
    """

    def __init__(self, output_func: Callable[[str], None] = print):
        self._output = output_func
        self.codes_shown: List[str] = []

    def show_scan_code(self, qr: str) -> None:
        """Show one scan code as the raw string to be rendered as a QR code"""
        self.codes_shown.append(qr)
        logger.debug(f"Displaying scan code #{len(self.codes_shown)}")

        self._print_block(
            "LINK WITH A QR CODE",
            [
                "Open WhatsApp on your phone",
                "Tap Menu (⋮) or Settings",
                "Tap 'Linked Devices'",
                "Tap 'Link a Device'",
                "Paste the code below into any QR code generator",
                "Scan the generated QR code with the phone",
            ],
        )
        self._output(qr)
        self._output("")

    def show_pairing_wait(self) -> None:
        self._output("\n⏳ REQUESTING PAIRING CODE...\n")

    def show_pairing_code(self, code: str, phone_number: str) -> None:
        """Show the numeric pairing code and the number it was issued for"""
        self.codes_shown.append(code)

        self._print_block(
            "PAIRING CODE",
            [
                "Open WhatsApp on the phone for the number below",
                "Tap 'Linked Devices' > 'Link a Device'",
                "Tap 'Link with phone number instead'",
                "Type the code shown here",
            ],
        )
        self._output(f"📱 Number: +{phone_number}")
        self._output(f"🔢 Code:   {self._format_code(code)}")
        self._output("⏰ The code expires in a few minutes\n")

    def show_pairing_error(self, error: str) -> None:
        self._output("❌ PAIRING FAILED\n")
        self._output(f"🚫 {error}")
        self._output("\n💡 Tips:")
        self._output("• Check the phone number")
        self._output("• Make sure WhatsApp is installed on that phone")
        self._output("• Try again in a few minutes\n")

    def show_connected(self, user_id: Optional[str], user_name: Optional[str]) -> None:
        self._output("✅ Bot connected to WhatsApp!")
        self._output(f"📱 Number: {user_id or 'N/A'}")
        self._output(f"👤 Name: {user_name or 'N/A'}")

    def show_rebootstrap_required(self, session_dir: str) -> None:
        """Fatal credential failure: the operator has to pair again"""
        self._output("")
        self._output("=" * 70)
        self._output("❌ The stored session is no longer accepted and retries are exhausted.")
        self._output(f"   The session at {session_dir} was moved aside.")
        self._output("   Restart the agent to pair the device again.")
        self._output("=" * 70)

    def _print_block(self, title: str, instructions: List[str]) -> None:
        self._output("")
        self._output("=" * 70)
        self._output(title)
        self._output("=" * 70)
        self._output("")
        for i, instruction in enumerate(instructions, 1):
            self._output(f"  {i}. {instruction}")
        self._output("")

    def _format_code(self, code: str) -> str:
        # 8-character codes read easier as ABCD-EFGH
        if len(code) == 8 and "-" not in code:
            return f"{code[:4]}-{code[4:]}"
        return code
