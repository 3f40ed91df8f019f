"""Utility functions for size handling."""

import re

from .errors import InvalidTargetError

# Smallest targets the front ends accept.
MIN_TARGET_BYTES = 20 * 1024
MIN_PDF_TARGET_BYTES = 50 * 1024


def parse_size(size_str: str) -> int:
    """
    Parse a human-readable size string to bytes.

    Args:
        size_str: Size string like "5MB", "800KB", "1.5GB"

    Returns:
        Size in bytes

    Raises:
        ValueError: If the size string is invalid
    """
    size_str = size_str.strip().upper()

    match = re.match(r'^(\d+(?:\.\d+)?)\s*(B|KB|MB|GB|K|M|G)?$', size_str)
    if not match:
        raise ValueError(f"Invalid size format: {size_str}. Use formats like '5MB', '800KB', '1.5GB'")

    value = float(match.group(1))
    unit = match.group(2) or 'B'

    multipliers = {
        'B': 1,
        'K': 1024,
        'KB': 1024,
        'M': 1024 * 1024,
        'MB': 1024 * 1024,
        'G': 1024 * 1024 * 1024,
        'GB': 1024 * 1024 * 1024,
    }

    return int(value * multipliers[unit])


def format_size(size_bytes: int) -> str:
    """
    Format bytes to human-readable string.

    Args:
        size_bytes: Size in bytes

    Returns:
        Human-readable size string
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.2f} MB"
    else:
        return f"{size_bytes / (1024 * 1024 * 1024):.2f} GB"


def calculate_compression_ratio(original_size: int, compressed_size: int) -> float:
    """
    Calculate compression ratio.

    Args:
        original_size: Original file size in bytes
        compressed_size: Compressed file size in bytes

    Returns:
        Compression ratio (e.g., 0.65 means 65% reduction), never negative
    """
    if original_size == 0:
        return 0.0
    return max(0.0, 1 - (compressed_size / original_size))


def parse_target(size_str: str, minimum: int = MIN_TARGET_BYTES) -> int:
    """
    Parse a user-supplied target size and enforce the front-end floor.

    Raises:
        InvalidTargetError: If the string is malformed or below ``minimum``
    """
    try:
        target = parse_size(size_str)
    except ValueError as e:
        raise InvalidTargetError(str(e)) from e

    if target < minimum:
        raise InvalidTargetError(
            f"Target size must be at least {format_size(minimum)}, got {format_size(target)}"
        )
    return target
