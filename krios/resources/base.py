"""
Base resource interface.
"""

from krios.services.client import ApiClient


class BaseResource:
    """
    Base class for typed access to one area of the API.

    All resources should:
    - Use ApiClient for HTTP requests (caching, dedup, retry, refresh)
    - Declare which cached reads their writes invalidate
    - Let ApiError propagate to the caller
    """

    def __init__(self, client: ApiClient):
        self.client = client
