from .json_path import JsonPath
from .json_schema import normalize_search_match, validate_search_payload

__all__ = ["JsonPath", "normalize_search_match", "validate_search_payload"]
