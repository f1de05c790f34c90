"""
Date/Time Normalization Module
"""
from .datetimes import (
    extract_date_from_text,
    extract_time_from_title,
    is_time_close,
    parse_date_value,
    parse_time_value,
    to_local_date,
)

__all__ = [
    "extract_date_from_text",
    "extract_time_from_title",
    "is_time_close",
    "parse_date_value",
    "parse_time_value",
    "to_local_date",
]
