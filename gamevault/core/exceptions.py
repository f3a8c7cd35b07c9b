class MarketplaceError(Exception):
    """Base for every business-rule error raised by the escrow core.

    ``status_code`` is the HTTP status an outer web layer should translate
    the error to; the core itself never imports a web framework.
    """

    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class InvalidStateTransition(MarketplaceError):
    status_code = 409

    def __init__(self, entity: str, entity_id: str, current: str, expected):
        if isinstance(expected, (list, tuple, set, frozenset)):
            expected_str = "' or '".join(sorted(str(e) for e in expected))
        else:
            expected_str = str(expected)
        super().__init__(
            f"{entity} {entity_id} is '{current}', expected '{expected_str}'"
        )
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.expected = expected


class NotFound(MarketplaceError):
    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class Unauthorized(MarketplaceError):
    status_code = 403

    def __init__(self, detail: str = "Not a party to this transaction"):
        super().__init__(detail)


class DuplicateDispute(MarketplaceError):
    status_code = 409

    def __init__(self, purchase_id: str, dispute_id: str | None = None):
        super().__init__(f"Purchase {purchase_id} already has an open dispute")
        self.purchase_id = purchase_id
        self.dispute_id = dispute_id


class ListingUnavailable(MarketplaceError):
    status_code = 409

    def __init__(self, listing_id: str):
        super().__init__(f"Listing {listing_id} is not available for purchase")
        self.listing_id = listing_id


class ValidationError(MarketplaceError):
    status_code = 400


class StorageError(MarketplaceError):
    """The ledger of record failed (connection lost, lock timeout, ...)."""

    status_code = 503
