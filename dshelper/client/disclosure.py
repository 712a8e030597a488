from dataclasses import asdict, dataclass


@dataclass(frozen=True)
class DisclosureSettings:
    """Disclosure filters enforced by a cohort server."""
    nfilter_tab: int = 3  # Smallest non-empty cell in a returned table
    nfilter_subset: int = 3  # Smallest subset that may be created
    nfilter_glm: float = 0.33  # Max parameters / n for a regression
    nfilter_string: int = 80  # Longest string argument
    nfilter_string_short: int = 20  # Longest object name
    nfilter_levels_max: int = 40  # Most levels a factor may report

    def to_dict(self) -> dict:
        return asdict(self)
