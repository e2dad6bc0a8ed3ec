"""Exception types raised across the pipeline."""

from __future__ import annotations


class LeadScopeError(Exception):
    """Base class for pipeline errors."""


class DatasetNotFoundError(LeadScopeError):
    """Raised when a worker is pointed at a dataset that does not exist."""

    def __init__(self, dataset_id: object) -> None:
        super().__init__(f"Dataset {dataset_id} not found")
        self.dataset_id = dataset_id


class PricingGateError(LeadScopeError):
    """Raised by ``assert_pricing_gate`` when an action exceeds the plan."""

    def __init__(self, reason: str, upgrade_hint: str = "") -> None:
        message = f"{reason} {upgrade_hint}".strip()
        super().__init__(message)
        self.reason = reason
        self.upgrade_hint = upgrade_hint


class FetchError(LeadScopeError):
    """A single page could not be fetched."""


class PlacesAPIError(LeadScopeError):
    """A places-search call failed."""
