# incident_capture/utils.py
import hashlib
import logging
import os
import re

import commentjson
import yaml
from json_repair import repair_json

logger = logging.getLogger("incident_capture")


def fingerprint_text(text: str | None) -> str:
    """sha256 of the exact text; None and "" hash the same."""
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()


def new_correlation_id() -> str:
    return f"corr_{os.urandom(8).hex()}"


def count_words(text: str | None) -> int:
    return len([w for w in (text or "").split() if w])


class Utils():
    def color_print(self, text, color=None, level=logging.INFO):
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
        logger.log(level, str(text))
        return False

    def clean_triple_backticks(self, code) -> str:
        pattern = r'```[a-zA-Z]*\n?|```\n?'
        return re.sub(pattern, '', code)

    def load_fault_tolerant_json(self, json_str, ensure_ordered=False):
        """
        Attempts to load a JSON-like string: strict/commented JSON first, then
        YAML for near-JSON output, then json_repair as the last resort.
        Raises ValueError when nothing parses.
        """
        def load_json(json_str, ensure_ordered):
            from collections import OrderedDict
            err, data = "", None
            cleaned = self.clean_triple_backticks(json_str).strip()
            try:
                if ensure_ordered:
                    data = commentjson.loads(cleaned, object_pairs_hook=OrderedDict)
                else:
                    data = commentjson.loads(cleaned)
                return data, ""
            except Exception as e:
                err = str(e)
                data = None
            try:
                data = yaml.safe_load(cleaned)
                if isinstance(data, str) or data is None:
                    raise ValueError("load_fault_tolerant_json: YAML parsing produced no structure.")
                return data, ""
            except Exception as e:
                err += "\n--\n" + str(e)
                data = None
            return data, err

        json_str = json_str or ""
        data, err = load_json(json_str, ensure_ordered)
        if data is not None:
            return data
        repaired_json_str = repair_json(json_str)
        r_data, r_err = load_json(repaired_json_str, ensure_ordered)
        if r_data:
            return r_data
        raise ValueError(f"load_fault_tolerant_json: JSON parsing failed: {err or r_err}")

