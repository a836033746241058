class CollectorError(Exception):
    pass


class ValidationError(CollectorError):
    """A required field is missing or has the wrong shape. Maps to a 400."""


class NotFoundError(CollectorError):
    """No website owns the given tracking id. Maps to a 400."""


class GeolocationUnavailable(CollectorError):
    """
    The IP lookup failed (network error, bad status, unknown address).
    Never surfaced to the caller; the location is stored empty instead.
    """
