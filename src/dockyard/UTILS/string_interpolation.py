"""
Utilities for string interpolation using environment variables.
"""
import re
from typing import Dict, List, Mapping

from .logging import get_logger

log = get_logger(__name__)


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports $VAR, ${VAR}, ${VAR:-default}, ${VAR-default}, ${VAR:+value} and the $$ escape.
    """
    # Group "escaped": $$
    # Group "braced": VAR name, "sep": :- / - / :+ / +, "alt": default or value
    # Group "bare": $VAR
    PATTERN = re.compile(
        r'\$(?:(?P<escaped>\$)'
        r'|\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?:(?P<sep>:?[-+])(?P<alt>[^}]*))?\}'
        r'|(?P<bare>[A-Za-z_][A-Za-z0-9_]*))'
    )

    @classmethod
    def interpolate(cls, template: str, context: Mapping[str, str], strict: bool = False) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        :param template: The string containing ${VAR} placeholders.
        :param context: The environment variables context.
        :param strict: Raise instead of substituting an empty string for unset variables.
        :return: The interpolated string.
        :raises KeyError: If ``strict`` and a variable is unset with no default.
        """
        missing: List[str] = []

        def replace(match):
            if match.group('escaped'):
                return '$'
            var_name = match.group('braced') or match.group('bare')
            sep = match.group('sep')
            alt_value = match.group('alt') or ''
            value = context.get(var_name)

            if sep in (':-', '-'):
                # ":-" also replaces empty values, "-" only unset ones
                unset = value is None or (sep == ':-' and value == '')
                return alt_value if unset else value
            if sep in (':+', '+'):
                is_set = value is not None and (sep == '+' or value != '')
                return alt_value if is_set else ''
            if value is None:
                if strict:
                    raise KeyError(f"Variable {var_name} not found in context")
                missing.append(var_name)
                return ''
            return value

        result = cls.PATTERN.sub(replace, template)
        for name in sorted(set(missing)):
            log.warning("variable_not_set", variable=name, substituted="")
        return result

    @staticmethod
    def build_context(*layers: Mapping[str, str]) -> Dict[str, str]:
        """
        Merges layers of variables, later layers win. ``None`` values are dropped.
        """
        context: Dict[str, str] = {}
        for layer in layers:
            context.update({k: v for k, v in layer.items() if v is not None})
        return context
