"""Input validation for inbound request bodies.

Every handler passes its raw body through :func:`validate_payload` before it
touches any field, so business logic only ever sees a frozen, normalized
pydantic model. Validation is pure: no store or provider access happens here.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Type, TypeVar, Union

from pydantic import ValidationError

from chatwarden.api.schemas import (
    BanIPRequest,
    BanUserRequest,
    CheckIPBanRequest,
    CheckIPLimitRequest,
    CheckUserBanRequest,
    CreateLicenseRequest,
    DeleteUserRequest,
    RecordUserIPRequest,
    RegisterSubjectRequest,
    RequestModel,
    SetAdminRequest,
    VerifyAdminRequest,
)
from chatwarden.service.errors import ValidationFailed

SCHEMAS: Dict[str, Type[RequestModel]] = {
    "verify_admin": VerifyAdminRequest,
    "ban_user": BanUserRequest,
    "ban_ip": BanIPRequest,
    "delete_user": DeleteUserRequest,
    "create_license": CreateLicenseRequest,
    "set_admin": SetAdminRequest,
    "register_subject": RegisterSubjectRequest,
    "check_ip_ban": CheckIPBanRequest,
    "check_ip_limit": CheckIPLimitRequest,
    "record_user_ip": RecordUserIPRequest,
    "check_user_ban": CheckUserBanRequest,
}

ModelT = TypeVar("ModelT", bound=RequestModel)


def _field_name(loc: tuple) -> str:
    parts = [str(part) for part in loc if not isinstance(part, int)]
    return ".".join(parts) or "body"


def field_errors(exc: ValidationError) -> List[Dict[str, str]]:
    """Flatten a pydantic error into one entry per violated field."""
    errors: List[Dict[str, str]] = []
    for err in exc.errors(include_url=False):
        message = err.get("msg", "invalid value")
        # "Value error, invalid IPv4..." -> "invalid IPv4..."
        if message.startswith("Value error, "):
            message = message[len("Value error, ") :]
        errors.append({"field": _field_name(tuple(err.get("loc", ()))), "message": message})
    return errors


def validate_payload(
    schema: Union[str, Type[ModelT]], payload: Any
) -> ModelT:
    """Validate ``payload`` against a request schema.

    Args:
        schema: A registered schema name or a ``RequestModel`` subclass.
        payload: Decoded JSON body.

    Returns:
        The normalized, immutable request model.

    Raises:
        ValidationFailed: With a per-field list of violations in ``detail``.
    """
    model_cls = SCHEMAS[schema] if isinstance(schema, str) else schema
    if not isinstance(payload, Mapping):
        raise ValidationFailed(
            "Invalid request body",
            detail=[{"field": "body", "message": "request body must be a JSON object"}],
        )
    try:
        return model_cls.model_validate(dict(payload))
    except ValidationError as exc:
        raise ValidationFailed("Invalid request body", detail=field_errors(exc)) from None
