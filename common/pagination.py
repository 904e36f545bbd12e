import math

from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response


class StandardResultsSetPagination(PageNumberPagination):
    """Shared pagination behavior for list endpoints.

    Clients can tune page size with `?limit=` (or `?page_size=`) but values are
    capped to keep payload sizes predictable. The response carries the rows
    under `results` plus a `pagination` block the admin UI reads directly.
    """

    page_size_query_param = "limit"
    max_page_size = 200

    def get_page_size(self, request):
        if "limit" not in request.query_params and "page_size" in request.query_params:
            self.page_size_query_param = "page_size"
        return super().get_page_size(request)

    def get_paginated_response(self, data):
        total = self.page.paginator.count
        limit = self.page.paginator.per_page
        return Response(
            {
                "count": total,
                "next": self.get_next_link(),
                "previous": self.get_previous_link(),
                "results": data,
                "pagination": {
                    "page": self.page.number,
                    "limit": limit,
                    "total": total,
                    "total_pages": math.ceil(total / limit) if limit else 0,
                },
            }
        )
