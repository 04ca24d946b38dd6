import functools
import json
import logging
from collections.abc import Callable
from typing import Any

from django.conf import settings
from django.http import HttpRequest, JsonResponse
from django.utils.dateparse import parse_datetime
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from chainvote import elections_api
from chainvote.exceptions import ChainVoteError, InvalidElection

logger = logging.getLogger(__name__)

type _View = Callable[..., JsonResponse]


def _json_error(kind: str, message: str, *, status: int) -> JsonResponse:
    return JsonResponse({"ok": False, "error": {"kind": kind, "message": message}}, status=status)


def _payload(request: HttpRequest) -> dict[str, Any]:
    content_type = str(request.content_type or "")
    if content_type.startswith("application/json") or request.method == "PATCH":
        if not request.body:
            return {}
        data = json.loads(request.body)
        if not isinstance(data, dict):
            raise ValueError("Request body must be a JSON object.")
        return data
    return {key: request.POST.get(key) for key in request.POST}


def _text(data: dict[str, Any], key: str) -> str:
    return str(data.get(key) or "").strip()


def _raw(data: dict[str, Any], key: str) -> str:
    return str(data.get(key) or "")


def _optional_int(data: dict[str, Any], key: str) -> int | None:
    raw = data.get(key)
    if raw in (None, ""):
        return None
    return int(raw)


def staff_json_view(view: _View) -> _View:
    """Session login plus staff flag; ChainVoteError becomes a JSON error body."""

    @functools.wraps(view)
    def wrapper(request: HttpRequest, *args: object, **kwargs: object) -> JsonResponse:
        user = getattr(request, "user", None)
        if user is None or not user.is_authenticated:
            return _json_error("NotAuthenticated", "Login required.", status=401)
        if not user.is_staff:
            return _json_error("Forbidden", "Admin access required.", status=403)

        try:
            data = _payload(request) if request.method in {"POST", "PATCH", "DELETE"} else {}
        except (ValueError, json.JSONDecodeError) as exc:
            return _json_error("BadRequest", str(exc), status=400)

        try:
            return view(request, data, *args, **kwargs)
        except ChainVoteError as exc:
            logger.info("Election request %s %s refused: %s", request.method, request.path, exc.kind)
            return JsonResponse({"ok": False, "error": exc.as_dict()}, status=exc.http_status)
        except (TypeError, ValueError) as exc:
            return _json_error("BadRequest", str(exc), status=400)

    return wrapper


def _election_response(election_id: int, *, status: int = 200, **extra: object) -> JsonResponse:
    election = elections_api.get_election(election_id)
    return JsonResponse({"ok": True, "election": elections_api.election_summary(election), **extra}, status=status)


@require_POST
@staff_json_view
def election_create(request: HttpRequest, data: dict[str, Any]) -> JsonResponse:
    starts_at = parse_datetime(_text(data, "starts_at")) if _text(data, "starts_at") else None
    ends_at = parse_datetime(_text(data, "ends_at")) if _text(data, "ends_at") else None
    if (_text(data, "starts_at") and starts_at is None) or (_text(data, "ends_at") and ends_at is None):
        raise InvalidElection("starts_at and ends_at must be ISO 8601 datetimes.")

    seats = data.get("seats") or []
    if isinstance(seats, str):
        seats = [s for s in seats.split(",")]

    election = elections_api.create_election(
        title=_text(data, "title"),
        description=str(data.get("description") or ""),
        seats=seats,
        starts_at=starts_at,
        ends_at=ends_at,
        chain_election_id=_optional_int(data, "chain_election_id"),
        actor=request.user,
    )
    return _election_response(election.pk, status=201)


@require_GET
@staff_json_view
def election_detail(request: HttpRequest, data: dict[str, Any], election_id: int) -> JsonResponse:
    return _election_response(election_id)


@require_http_methods(["PATCH", "POST"])
@staff_json_view
def election_status(request: HttpRequest, data: dict[str, Any], election_id: int) -> JsonResponse:
    elections_api.change_status(
        election_id=election_id,
        status=_text(data, "status"),
        admin_password=_raw(data, "admin_password"),
        actor=request.user,
    )
    return _election_response(election_id)


@require_POST
@staff_json_view
def election_finalize(request: HttpRequest, data: dict[str, Any], election_id: int) -> JsonResponse:
    elections_api.finalize_tally(
        election_id=election_id,
        admin_password=_raw(data, "admin_password"),
        actor=request.user,
    )
    return _election_response(election_id)


@require_POST
@staff_json_view
def election_reset_code(request: HttpRequest, data: dict[str, Any], election_id: int) -> JsonResponse:
    code = elections_api.issue_reset_code(
        election_id=election_id,
        admin_password=_raw(data, "admin_password"),
        actor=request.user,
    )
    return JsonResponse(
        {
            "ok": True,
            "confirmation_code": code,
            "expires_in_seconds": settings.ELECTION_RESET_CODE_TTL_SECONDS,
            "confirmation_phrase": settings.ELECTION_RESET_CONFIRM_PHRASE,
        }
    )


@require_POST
@staff_json_view
def election_reset(request: HttpRequest, data: dict[str, Any], election_id: int) -> JsonResponse:
    elections_api.reset_election(
        election_id=election_id,
        request=elections_api.ResetRequest(
            reason=_text(data, "reason"),
            admin_password=_raw(data, "admin_password"),
            confirmation_code=_text(data, "confirmation_code"),
            confirmation_phrase=_raw(data, "confirmation_phrase"),
        ),
        actor=request.user,
    )
    return _election_response(election_id)


@require_POST
@staff_json_view
def election_clear_votes(request: HttpRequest, data: dict[str, Any], election_id: int) -> JsonResponse:
    elections_api.clear_votes(
        election_id=election_id,
        admin_password=_raw(data, "admin_password"),
        actor=request.user,
    )
    return _election_response(election_id)


@require_http_methods(["PATCH", "POST"])
@staff_json_view
def election_lock_candidates(request: HttpRequest, data: dict[str, Any], election_id: int) -> JsonResponse:
    elections_api.lock_candidate_list(election_id=election_id, actor=request.user)
    return _election_response(election_id)


@require_POST
@staff_json_view
def election_candidates(request: HttpRequest, data: dict[str, Any], election_id: int) -> JsonResponse:
    candidate = elections_api.add_candidate(
        election_id=election_id,
        name=_text(data, "name"),
        seat=_text(data, "seat"),
        chain_candidate_id=_optional_int(data, "chain_candidate_id"),
        actor=request.user,
    )
    return _election_response(election_id, status=201, candidate_id=candidate.pk)


@require_http_methods(["PATCH", "DELETE"])
@staff_json_view
def election_candidate(request: HttpRequest, data: dict[str, Any], election_id: int, candidate_id: int) -> JsonResponse:
    if request.method == "DELETE":
        elections_api.remove_candidate(election_id=election_id, candidate_id=candidate_id, actor=request.user)
    else:
        elections_api.update_candidate(
            election_id=election_id,
            candidate_id=candidate_id,
            name=data.get("name"),
            seat=data.get("seat"),
            actor=request.user,
        )
    return _election_response(election_id)
