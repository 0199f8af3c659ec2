"""Rendering of token results."""

from __future__ import annotations

import json

import yaml

from pctl.models import OutputFormat, TokenResult


def format_text(result: TokenResult) -> str:
    lines = [
        "Token Generation Result:",
        "=======================",
        f"Access Token: {result.access_token}",
        f"Token Type: {result.token_type}",
        f"Expires In: {result.expires_in} seconds",
        f"Expires At: {result.expires_at.strftime('%Y-%m-%d %H:%M:%S %Z')}",
    ]
    if result.scope:
        lines.append(f"Scope: {result.scope}")
    if result.refresh_token:
        lines.append(f"Refresh Token: {result.refresh_token}")
    return "\n".join(lines) + "\n"


def format_output(result: TokenResult, output_format: OutputFormat | str = OutputFormat.TEXT) -> str:
    """Render a token result as text, JSON or YAML.

    Unknown formats fall back to text.
    """
    try:
        fmt = OutputFormat(output_format)
    except ValueError:
        fmt = OutputFormat.TEXT

    if fmt is OutputFormat.JSON:
        return json.dumps(result.to_dict(), indent=2) + "\n"
    if fmt is OutputFormat.YAML:
        return yaml.safe_dump(result.to_dict(), sort_keys=False)
    return format_text(result)
