from .models import HTTPRequest, HTTPResponse

HEALTH_PATH = '/health'


class HealthHandler:
    """Answers liveness checks."""

    def handle(self, request: HTTPRequest) -> HTTPResponse:
        if request.method != 'GET':
            return HTTPResponse.create_error(405, "Method not allowed")

        if request.path != HEALTH_PATH:
            return HTTPResponse.create_error(404, "404 page not found")

        return HTTPResponse(
            status_code=200,
            headers=[('Content-Type', 'text/plain; charset=utf-8')],
            body=b"Server is healthy"
        )
