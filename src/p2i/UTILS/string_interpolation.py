"""
Variable substitution for configuration files and Dockerfile build arguments.
"""
import re
from typing import Dict, List

# ${VAR}, ${VAR:-default}, ${VAR:+alt} or bare $VAR
_PATTERN = re.compile(
    r'\$\{([A-Za-z_][A-Za-z0-9_]*)(?::(-|\+)([^}]*))?\}|\$([A-Za-z_][A-Za-z0-9_]*)'
)


class EnvironmentInterpolator:
    """
    Utility for interpolating variables in strings.
    Supports ${VAR}, ${VAR:-default}, ${VAR:+value} and $VAR.
    """
    @staticmethod
    def interpolate(template: str, context: Dict[str, str], strict: bool = True) -> str:
        """
        Interpolates variables in the template string using the provided context.

        :param template: The string containing placeholders.
        :param context: Variable values.
        :param strict: Raise on unset variables without a default. When False,
            unset variables resolve to an empty string, as the Docker builder does.
        :return: The interpolated string.
        :raises KeyError: If strict and a variable is unset with no default.
        """
        def replace(match):
            var_name = match.group(1) or match.group(4)
            modifier = match.group(2)
            alt_value = match.group(3)

            value = context.get(var_name)

            if modifier == '-':
                return value if value else alt_value
            if modifier == '+':
                return alt_value if value else ''
            if value is not None:
                return value
            if strict:
                raise KeyError(f"Variable {var_name} not found in context")
            return ''

        # $$ escapes a literal dollar sign
        parts = template.split('$$')
        return '$'.join(_PATTERN.sub(replace, part) for part in parts)

    @staticmethod
    def variables(template: str) -> List[str]:
        """
        Lists the variable names referenced by a template, in order of appearance.
        """
        names = []
        for match in _PATTERN.finditer(template):
            name = match.group(1) or match.group(4)
            if name not in names:
                names.append(name)
        return names
