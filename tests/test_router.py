"""Tests for perch.router: registration, dispatch, status routes and hooks."""

import anyio
import pytest

from perch.config import RouterConfig
from perch.errors import HTTPError
from perch.http.request import Request
from perch.http.response import Response
from perch.router import Router
from perch.routing.coerce import DECLINED, JSON, TEXT
from perch.routing.route import Route
from perch.testing import MockRequestEvent, TestClient

BOOKS = {"1": "The Stand", "2": "It"}


def _books_router(**config) -> Router:
    router = Router(RouterConfig(**config))

    @router.get("/books/:id")
    def show(ctx):
        title = BOOKS.get(ctx.params["id"])
        if title is None:
            return DECLINED
        return {"title": title}

    return router


async def _dispatch(router: Router, url: str, **options) -> tuple[MockRequestEvent, Response]:
    event = MockRequestEvent(url, **options)
    await router.dispatch(event)
    return event, await event.response()


class TestScenarios:
    async def test_found(self) -> None:
        router = _books_router()
        event, response = await _dispatch(router, "http://localhost/books/2")
        assert response.status == 200
        assert response.body == '{"title":"It"}'
        assert response.content_type == JSON
        assert event.delivered == [response]

    async def test_unknown_id_declines_to_not_found(self) -> None:
        router = _books_router()
        _, response = await _dispatch(router, "http://localhost/books/99")
        assert response.status == 404
        assert response.json()["message"] == "Not Found"

    async def test_handler_failure_is_500(self) -> None:
        router = Router()

        @router.get("/boom")
        def boom(ctx):
            raise RuntimeError("boom")

        _, response = await _dispatch(router, "http://localhost/boom")
        assert response.status == 500
        assert response.json() == {
            "status": 500,
            "statusText": "Internal Server Error",
            "message": "Internal Server Error",
        }
        assert "boom" not in response.text

    async def test_status_route_reshapes_not_found(self) -> None:
        router = _books_router()

        @router.on_status("client-error")
        def shape(ctx, status, response):
            return {"error": True}

        _, response = await _dispatch(router, "http://localhost/nowhere")
        assert response.status == 404
        assert response.body == '{"error":true}'

    async def test_status_route_reshapes_manual_not_found(self) -> None:
        router = Router()
        router.get("/m", lambda ctx: Response("nope", status=404))

        @router.on_status("client-error")
        def shape(ctx, status, response):
            return {"error": True}

        _, response = await _dispatch(router, "http://localhost/m")
        assert response.status == 404
        assert response.body == '{"error":true}'
        assert response.content_type == JSON

    async def test_none_is_no_content(self) -> None:
        router = Router()
        router.delete("/books/:id", lambda ctx: None)
        _, response = await _dispatch(router, "http://localhost/books/1", method="DELETE")
        assert response.status == 204
        assert response.body == b""
        assert response.content_type is None


class TestRouteOrder:
    async def test_first_route_wins(self) -> None:
        router = Router()
        router.get("/a", lambda ctx: "first")
        router.get("/a", lambda ctx: "second")
        _, response = await _dispatch(router, "http://localhost/a")
        assert response.text == "first"

    async def test_declined_falls_through(self) -> None:
        router = Router()
        calls: list[str] = []

        def first(ctx):
            calls.append("first")
            return DECLINED

        def second(ctx):
            calls.append("second")
            return "second"

        router.get("/a", first)
        router.get("/:name", second)
        _, response = await _dispatch(router, "http://localhost/a")
        assert response.text == "second"
        assert response.content_type == TEXT
        assert calls == ["first", "second"]

    async def test_removal_during_dispatch_keeps_snapshot(self) -> None:
        router = Router()
        later: list[Route] = []

        def remover(ctx):
            later[0].remove()
            return DECLINED

        router.get("/a", remover)
        later.append(router.get("/a", lambda ctx: "still here"))

        _, response = await _dispatch(router, "http://localhost/a")
        assert response.text == "still here"

        _, response = await _dispatch(router, "http://localhost/a")
        assert response.status == 404
        assert len(router.routes) == 1


class TestRegistration:
    def test_direct_call_returns_route(self) -> None:
        router = Router()
        route = router.get("/a", lambda ctx: "a")
        assert isinstance(route, Route)
        assert router.routes == (route,)

    def test_decorator_returns_function(self) -> None:
        router = Router()

        @router.post("/a")
        def create(ctx):
            return "created"

        assert callable(create)
        assert create(None) == "created"
        assert router.routes[0].methods == frozenset({"POST"})

    def test_route_with_many_methods(self) -> None:
        router = Router()
        route = router.route("/a", ["get", "put"], lambda ctx: "a")
        assert route.methods == frozenset({"GET", "PUT"})

    def test_route_options(self) -> None:
        router = Router()
        route = router.get("/A", lambda ctx: "a", name="upper", sensitive=True)
        assert route.name == "upper"
        assert route.sensitive

    async def test_all(self) -> None:
        router = Router()
        router.all("/any", lambda ctx: ctx.request.method)
        for method in ("DELETE", "GET", "POST", "PUT"):
            _, response = await _dispatch(router, "http://localhost/any", method=method)
            assert response.text == method
        _, response = await _dispatch(router, "http://localhost/any", method="PATCH")
        assert response.status == 404

    async def test_verb_shortcuts(self) -> None:
        router = Router()
        router.put("/x", lambda ctx: "put")
        router.patch("/x", lambda ctx: "patch")
        router.head("/x", lambda ctx: "head")
        router.options("/x", lambda ctx: "options")
        for method in ("PUT", "PATCH", "HEAD", "OPTIONS"):
            _, response = await _dispatch(router, "http://localhost/x", method=method)
            assert response.text == method.lower()

    def test_status_route_registration(self) -> None:
        router = Router()
        status_route = router.add_status_route(404, lambda ctx, s, r: None)
        assert router.status_routes == (status_route,)
        status_route.remove()
        assert router.status_routes == ()

    def test_repr(self) -> None:
        router = Router()
        router.get("/a", lambda ctx: "a")
        assert "routes=1" in repr(router)


class TestStatusChain:
    async def test_chain_sees_previous_result(self) -> None:
        router = Router()
        router.get("/n", lambda ctx: {"n": 1})

        def bump(ctx, status, response):
            return {"n": response.json()["n"] + 1}

        router.add_status_route(200, bump)
        router.add_status_route("success", bump)
        _, response = await _dispatch(router, "http://localhost/n")
        assert response.json() == {"n": 3}

    async def test_none_keeps_previous(self) -> None:
        router = Router()
        router.get("/a", lambda ctx: "kept")
        router.add_status_route(200, lambda ctx, s, r: None)
        _, response = await _dispatch(router, "http://localhost/a")
        assert response.text == "kept"

    async def test_last_producer_wins(self) -> None:
        router = Router()
        router.get("/a", lambda ctx: "original")
        router.add_status_route(200, lambda ctx, s, r: "first")
        router.add_status_route(200, lambda ctx, s, r: "second")
        _, response = await _dispatch(router, "http://localhost/a")
        assert response.text == "second"

    async def test_matches_on_triggering_status(self) -> None:
        router = Router()
        router.get("/a", lambda ctx: "ok")
        later: list[int] = []
        router.add_status_route(200, lambda ctx, s, r: Response("gone", status=410))
        router.add_status_route("client-error", lambda ctx, s, r: later.append(s))
        _, response = await _dispatch(router, "http://localhost/a")
        assert response.status == 410
        assert later == []

    async def test_non_matching_status_routes_skipped(self) -> None:
        router = Router()
        router.get("/a", lambda ctx: "ok")
        router.add_status_route(404, lambda ctx, s, r: "not me")
        _, response = await _dispatch(router, "http://localhost/a")
        assert response.text == "ok"

    async def test_failing_status_route_is_500_without_reentry(self) -> None:
        router = Router()
        router.get("/a", lambda ctx: "ok")
        server_errors: list[int] = []

        def broken(ctx, status, response):
            raise RuntimeError("status route failed")

        router.add_status_route(200, broken)
        router.add_status_route("server-error", lambda ctx, s, r: server_errors.append(s))
        _, response = await _dispatch(router, "http://localhost/a")
        assert response.status == 500
        assert server_errors == []

    async def test_error_responses_run_through_chain(self) -> None:
        router = Router()

        @router.get("/boom")
        def boom(ctx):
            raise RuntimeError("boom")

        router.add_status_route("server-error", lambda ctx, s, r: f"handled {s}")
        _, response = await _dispatch(router, "http://localhost/boom")
        assert response.status == 500
        assert response.text == "handled 500"

    async def test_status_route_cookie_reaches_response(self) -> None:
        router = Router()
        router.get("/a", lambda ctx: "ok")

        def remember(ctx, status, response):
            ctx.set_cookie("seen", "1")
            return response

        router.add_status_route(200, remember)
        _, response = await _dispatch(router, "http://localhost/a")
        assert response.header_list("set-cookie") == ["seen=1; Path=/; HttpOnly; SameSite=Lax"]


class TestErrors:
    async def test_http_error_detail_shown(self) -> None:
        router = Router()

        @router.get("/secret")
        def secret(ctx):
            raise HTTPError(status=403, detail="Members only")

        _, response = await _dispatch(router, "http://localhost/secret")
        assert response.status == 403
        assert response.json()["message"] == "Members only"

    async def test_http_error_headers(self) -> None:
        router = Router()

        @router.get("/slow-down")
        def limited(ctx):
            raise HTTPError(status=429, headers=(("Retry-After", "30"),))

        _, response = await _dispatch(router, "http://localhost/slow-down")
        assert response.status == 429
        assert response.header("retry-after") == "30"

    async def test_expose_errors(self) -> None:
        router = Router(RouterConfig(expose_errors=True))

        @router.get("/boom")
        def boom(ctx):
            raise RuntimeError("boom")

        _, response = await _dispatch(router, "http://localhost/boom")
        body = response.json()
        assert body["message"] == "boom"
        assert "RuntimeError" in body["stack"]

    async def test_route_error_handler(self) -> None:
        router = Router()

        def conflict(request, exc):
            return Response(f"conflict: {exc}", status=409)

        def create(ctx):
            raise ValueError("duplicate")

        router.post("/books", create, error_handler=conflict)
        _, response = await _dispatch(router, "http://localhost/books", method="POST")
        assert response.status == 409
        assert response.text == "conflict: duplicate"

    async def test_error_handler_declining_uses_default(self) -> None:
        router = Router()

        def create(ctx):
            raise HTTPError(status=400, detail="bad title")

        router.post("/books", create, error_handler=lambda request, exc: None)
        _, response = await _dispatch(router, "http://localhost/books", method="POST")
        assert response.status == 400
        assert response.json()["message"] == "bad title"

    async def test_error_handler_body_is_coerced(self) -> None:
        router = Router()

        def create(ctx):
            raise HTTPError(status=409, detail="duplicate")

        router.post("/books", create, error_handler=lambda request, exc: {"reason": exc.detail})
        event, response = await _dispatch(router, "http://localhost/books", method="POST")
        assert response.status == 409
        assert response.json() == {"reason": "duplicate"}
        assert event.errors == []

    async def test_failing_error_handler(self) -> None:
        router = Router()

        def handler(ctx):
            raise HTTPError(status=400)

        def error_handler(request, exc):
            raise RuntimeError("error handler failed")

        router.get("/a", handler, error_handler=error_handler)
        _, response = await _dispatch(router, "http://localhost/a")
        assert response.status == 500

    async def test_on_error_supplies_response(self) -> None:
        router = Router()
        seen: list[tuple[str, bool]] = []

        @router.get("/boom")
        def boom(ctx):
            raise RuntimeError("boom")

        @router.on_error
        def custom(payload):
            seen.append((payload.message, payload.respondable))
            assert payload.route is not None
            return Response("custom failure", status=503)

        _, response = await _dispatch(router, "http://localhost/boom")
        assert response.status == 503
        assert response.text == "custom failure"
        assert seen == [("boom", True)]

    async def test_on_error_observer_only(self) -> None:
        router = Router()
        causes: list[BaseException] = []

        @router.get("/boom")
        def boom(ctx):
            raise KeyError("missing")

        router.on_error(lambda payload: causes.append(payload.cause))
        _, response = await _dispatch(router, "http://localhost/boom")
        assert response.status == 500
        assert isinstance(causes[0], KeyError)

    async def test_failure_is_contained_per_request(self) -> None:
        router = Router()
        router.get("/boom", lambda ctx: 1 / 0)
        router.get("/fine", lambda ctx: "fine")

        results: dict[str, int] = {}

        async def run(path: str) -> None:
            _, response = await _dispatch(router, f"http://localhost{path}")
            results[path] = response.status

        async with anyio.create_task_group() as tg:
            tg.start_soon(run, "/boom")
            tg.start_soon(run, "/fine")

        assert results == {"/boom": 500, "/fine": 200}


class TestNotFound:
    async def test_on_not_found_replaces_default(self) -> None:
        router = Router()
        defaults: list[int] = []

        @router.on_not_found
        def friendly(payload):
            defaults.append(payload.response.status)
            return Response("Nothing here", status=404)

        _, response = await _dispatch(router, "http://localhost/missing")
        assert response.status == 404
        assert response.text == "Nothing here"
        assert defaults == [404]

    async def test_method_mismatch_is_404_by_default(self) -> None:
        router = Router()
        router.get("/books", lambda ctx: [])
        _, response = await _dispatch(router, "http://localhost/books", method="POST")
        assert response.status == 404

    async def test_method_not_allowed_opt_in(self) -> None:
        router = Router(RouterConfig(method_not_allowed=True))
        router.get("/books", lambda ctx: [])
        router.put("/books", lambda ctx: [])
        _, response = await _dispatch(router, "http://localhost/books", method="POST")
        assert response.status == 405
        assert response.header("allow") == "GET, PUT"

    async def test_not_found_keeps_header_bag(self) -> None:
        router = Router()

        @router.on_request
        def trace(payload):
            payload.response_headers["X-Trace"] = "t1"

        _, response = await _dispatch(router, "http://localhost/missing")
        assert response.header("x-trace") == "t1"


class TestHooks:
    async def test_on_request_early_response(self) -> None:
        router = Router()
        handled: list[object] = []
        router.get("/a", lambda ctx: "from route")

        @router.on_request
        async def maintenance(payload):
            await payload.event.respond(Response("maintenance", status=503))

        router.on_handled(lambda payload: handled.append(payload.response))
        event, response = await _dispatch(router, "http://localhost/a")
        assert response.text == "maintenance"
        assert event.delivered == [response]
        assert handled == [None]

    async def test_on_handled(self) -> None:
        router = Router()
        router.get("/a", lambda ctx: "ok")
        seen: list[tuple[int, str]] = []

        @router.on_handled
        def record(payload):
            seen.append((payload.response.status, payload.route.path))
            assert payload.duration >= 0

        await _dispatch(router, "http://localhost/a")
        assert seen == [(200, "/a")]

    async def test_failing_request_hook_answers_500(self) -> None:
        router = Router()
        router.get("/a", lambda ctx: "ok")

        @router.on_request
        def broken(payload):
            raise RuntimeError("hook failed")

        event, response = await _dispatch(router, "http://localhost/a")
        assert response.status == 500
        assert response.json()["message"] == "Internal Server Error"
        assert response.header("x-request-id") == event.id
        assert event.delivered == [response]
        assert event.errors == []

    async def test_failing_request_hook_runs_status_chain(self) -> None:
        router = Router()
        router.on_request(lambda payload: 1 / 0)
        seen: list[int] = []

        @router.on_status("server-error")
        def shape(ctx, status, response):
            seen.append(status)
            return "unavailable"

        _, response = await _dispatch(router, "http://localhost/a")
        assert seen == [500]
        assert response.status == 500
        assert response.text == "unavailable"

    async def test_failing_error_hook_answers_500(self) -> None:
        router = Router()

        @router.get("/boom")
        def boom(ctx):
            raise RuntimeError("boom")

        router.on_error(lambda payload: 1 / 0)
        event, response = await _dispatch(router, "http://localhost/boom")
        assert response.status == 500
        assert event.delivered == [response]
        assert event.errors == []

    async def test_unanswerable_hook_failure_settles_with_error(self) -> None:
        router = Router()
        router.on_request(lambda payload: 1 / 0)

        @router.on_status("*")
        def broken(ctx, status, response):
            raise RuntimeError("status route failed")

        router.on_error(lambda payload: 1 / 0)
        event = MockRequestEvent("http://localhost/a")
        await router.dispatch(event)
        with pytest.raises(ZeroDivisionError):
            await event.response()
        assert event.delivered == []

    async def test_failing_handled_hook_keeps_response(self) -> None:
        router = Router()
        router.get("/a", lambda ctx: "ok")
        router.on_handled(lambda payload: 1 / 0)
        _, response = await _dispatch(router, "http://localhost/a")
        assert response.text == "ok"

    def test_unknown_hook_kind(self) -> None:
        router = Router()
        with pytest.raises(ValueError):
            router.hooks.add("teardown", lambda payload: None)


class TestRequestId:
    async def test_request_id_header(self) -> None:
        router = _books_router()
        event, response = await _dispatch(router, "http://localhost/books/1")
        assert response.header("x-request-id") == event.id

    async def test_request_id_on_error_responses(self) -> None:
        router = Router()
        event, response = await _dispatch(router, "http://localhost/missing")
        assert response.header("x-request-id") == event.id

    async def test_handler_supplied_id_kept(self) -> None:
        router = Router()
        router.get("/a", lambda ctx: Response("a", headers=(("X-Request-Id", "mine"),)))
        _, response = await _dispatch(router, "http://localhost/a")
        assert response.header_list("x-request-id") == ["mine"]

    async def test_disabled(self) -> None:
        router = _books_router(request_id_header=None)
        _, response = await _dispatch(router, "http://localhost/books/1")
        assert response.header("x-request-id") is None

    async def test_context_id_matches(self) -> None:
        router = Router()
        router.get("/a", lambda ctx: ctx.id)
        event, response = await _dispatch(router, "http://localhost/a")
        assert response.text == event.id


class TestContextFeatures:
    async def test_set_cookie(self) -> None:
        router = Router()

        @router.post("/login")
        def login(ctx):
            ctx.set_cookie("sid", "abc")
            return "welcome"

        client = TestClient(router)
        response = await client.post("/login")
        assert response.header_list("set-cookie") == ["sid=abc; Path=/; HttpOnly; SameSite=Lax"]

    async def test_secure_cookie_on_secure_router(self) -> None:
        router = Router(RouterConfig(secure=True))

        @router.get("/a")
        def handler(ctx):
            ctx.set_cookie("sid", "abc")
            return "ok"

        _, response = await _dispatch(router, "http://localhost/a")
        assert "Secure" in response.header("set-cookie")

    async def test_json_body(self) -> None:
        router = Router()

        @router.post("/books")
        async def create(ctx):
            data = await ctx.body()
            return Response.from_json({"created": data["title"]}, status=201)

        client = TestClient(router)
        response = await client.post("/books", json={"title": "Carrie"})
        assert response.status == 201
        assert response.json() == {"created": "Carrie"}

    async def test_upgrade_unsupported_is_501(self) -> None:
        router = Router()
        router.get("/ws", lambda ctx: ctx.upgrade())
        _, response = await _dispatch(router, "http://localhost/ws")
        assert response.status == 501

    async def test_transport_upgrade_skips_router_response(self) -> None:
        class UpgradableEvent(MockRequestEvent):
            async def _accept(self) -> None:
                await self.respond(Response(status=101))

            def upgrade(self):
                return self._accept()

        router = Router()

        @router.get("/ws")
        async def ws(ctx):
            await ctx.upgrade()
            return "ignored"

        event = UpgradableEvent("http://localhost/ws")
        await router.dispatch(event)
        response = await event.response()
        assert response.status == 101
        assert len(event.delivered) == 1


class TestHandle:
    async def test_handle_request(self) -> None:
        router = _books_router()
        response = await router.handle(Request.from_url("http://localhost/books/1"))
        assert response.json() == {"title": "The Stand"}

    async def test_concurrent_handles(self) -> None:
        router = Router()

        @router.get("/books/:id")
        async def show(ctx):
            await anyio.sleep(0.01 if ctx.params["id"] == "1" else 0)
            return ctx.params["id"]

        results: dict[str, str] = {}

        async def run(book_id: str) -> None:
            response = await router.handle(Request.from_url(f"/books/{book_id}"))
            results[book_id] = response.text

        async with anyio.create_task_group() as tg:
            for book_id in ("1", "2", "3"):
                tg.start_soon(run, book_id)

        assert results == {"1": "1", "2": "2", "3": "3"}
        assert router.in_flight == 0
