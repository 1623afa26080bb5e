import requests
from flask import Flask, Response, jsonify, request

from elastic_tier.traffic_router import Unavailable


HOP_BY_HOP = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailers", "transfer-encoding", "upgrade", "host", "content-length",
}


def _end_to_end(headers, drop=()):
    return {k: v for k, v in headers.items()
            if k.lower() not in HOP_BY_HOP and k.lower() not in drop}


def create_app(router, worker_port=80, timeout=30, http=None, status=None):
    """Flask app that forwards every request to the member the router picks.

    ``status`` is an optional callable returning the fleet status dict served
    at /_fleet/status.
    """
    app = Flask(__name__)
    http = http or requests

    @app.route("/_fleet/status", methods=["GET"])
    def fleet_status():
        body = status() if status else {"router": router.status()}
        return jsonify(body)

    @app.route("/", defaults={"path": ""}, methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"])
    @app.route("/<path:path>", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"])
    def forward(path):
        target = router.route(request)
        if isinstance(target, Unavailable):
            return Response(f"Service unavailable: {target.reason}\n", status=503,
                            headers={"Retry-After": "5"}, mimetype="text/plain")

        url = f"http://{target.address}:{worker_port}/{path}"
        try:
            upstream = http.request(
                request.method,
                url,
                params=request.query_string.decode("latin-1") or None,
                data=request.get_data(),
                headers=_end_to_end(request.headers),
                timeout=timeout,
                allow_redirects=False,
            )
        except requests.RequestException as e:
            print(f"Forward to {target.member_id} failed: {e}", flush=True)
            return Response("Bad gateway\n", status=502, mimetype="text/plain")

        return Response(upstream.content, status=upstream.status_code,
                        headers=_end_to_end(upstream.headers, drop=("content-encoding",)))

    return app
