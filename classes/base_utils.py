# classes/base_utils.py


import json
import logging
import random
import re
import string
from datetime import date, datetime


logger = logging.getLogger("headstone_backend")

_SLUG_ALPHABET = string.ascii_lowercase + string.digits


class BaseUtils():

    # -----------------------
    # General Utils
    # -----------------------

    def color_print(self, text, color=None, end_value=None):
        COLOR_CODES = {
            'black': '30', 'red': '31', 'green': '32', 'yellow': '33', 'blue': '34', 'magenta': '35',
            'cyan': '36', 'white': '37', 'bright_black': '90', 'bright_red': '91', 'bright_green': '92',
            'bright_yellow': '93', 'bright_blue': '94', 'bright_magenta': '95', 'bright_cyan': '96', 'bright_white': '97'
        }
        if color and color.lower() in COLOR_CODES:
            color_code = COLOR_CODES[color.lower()]
            start = f"\033[{color_code}m"
            end = "\033[0m"
            text = f"{start}{text}{end}"
        logger.info(str(text))
        return False

    def _coerce_field_to_str(self, value) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value.strip()
        try:
            return json.dumps(value, indent=2)
        except TypeError:
            return str(value).strip()

    # -----------------------
    # Memorial Utils
    # -----------------------

    def _random_suffix(self, length: int) -> str:
        return "".join(random.choices(_SLUG_ALPHABET, k=length))

    def generate_slug_id(self, name) -> str:
        """
        "Jane Q. Doe" -> "jane-q-doe-k3x9ab". Empty names get "memorial-<8 chars>".
        """
        name = self._coerce_field_to_str(name)
        if not name:
            return f"memorial-{self._random_suffix(8)}"

        slug = name.lower().strip()
        slug = re.sub(r"[^\w\s-]", "", slug, flags=re.ASCII)
        slug = re.sub(r"[\s_-]+", "-", slug, flags=re.ASCII)
        slug = re.sub(r"^-+|-+$", "", slug)
        if not slug:
            return f"memorial-{self._random_suffix(8)}"
        return f"{slug}-{self._random_suffix(6)}"

    def _month_day(self, date_str) -> str | None:
        """
        "1950-03-07" -> "03-07" (used for anniversary lookups). None when unparsable.
        """
        if not date_str or not isinstance(date_str, str) or "-" not in date_str or len(date_str) < 8:
            return None
        try:
            parsed = datetime.fromisoformat(date_str.strip())
        except ValueError:
            try:
                parsed = datetime.combine(date.fromisoformat(date_str.strip()[:10]), datetime.min.time())
            except ValueError:
                return None
        return f"{parsed.month:02d}-{parsed.day:02d}"
