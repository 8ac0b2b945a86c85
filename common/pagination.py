from rest_framework.pagination import PageNumberPagination


class StandardResultsSetPagination(PageNumberPagination):
    """Opt-in pagination for large list endpoints.

    Ledger and POS lists return plain arrays; only views that set
    `pagination_class` explicitly (audit logs) page their results.
    """

    page_size = 50
    page_size_query_param = "page_size"
    max_page_size = 200
