from dataclasses import dataclass


@dataclass
class HelperSettings:
    """Client-side settings shared by the orchestration routines."""
    na_sentinel: int = -99999  # Stand-in for missing outcome values
    max_name_length: int = 20  # Longest object name the servers accept
    name_suffix_reserve: int = 6  # Characters appended to band names (e.g. "_wide")
    digits: int = 2  # Rounding applied to reported statistics
    combined_label: str = "combined"
    missing_label: str = "missing"
    default_id_var: str = "child_id"
    derived_suffix: str = "_derived"
    working_suffix: str = "_tmp"


DEFAULT_SETTINGS = HelperSettings()
