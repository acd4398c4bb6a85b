from rest_framework.response import Response
from rest_framework.views import exception_handler


class DomainError(Exception):
    """Business-rule failure rendered in the API error envelope."""

    status_code = 400
    default_code = "error"
    default_detail = "Request failed"

    def __init__(self, detail=None, code=None, fields=None):
        self.detail = detail or self.default_detail
        self.code = code or self.default_code
        self.fields = fields or {}
        super().__init__(self.detail)


def api_exception_handler(exc, context):
    if isinstance(exc, DomainError):
        return Response({"code": exc.code, "detail": exc.detail, "fields": exc.fields}, status=exc.status_code)

    response = exception_handler(exc, context)
    if response is None:
        return response

    if isinstance(response.data, dict):
        detail = response.data.get("detail", "Request failed")
        fields = {k: v for k, v in response.data.items() if k != "detail"}
    else:
        detail = "Request failed"
        fields = {}

    response.data = {
        "code": getattr(exc, "default_code", "error"),
        "detail": detail,
        "fields": fields,
    }
    return response
