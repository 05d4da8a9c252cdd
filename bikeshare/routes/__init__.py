"""
Request helpers shared by the blueprints.
"""

import uuid

from flask import request
from flask_jwt_extended import get_jwt, get_jwt_identity

from bikeshare.clock import parse_timestamp
from bikeshare.errors import ForbiddenError, ValidationError
from bikeshare.services.geo import parse_point

MAX_PAGE_SIZE = 100


def json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def parse_uuid(raw, field):
    try:
        return uuid.UUID(str(raw))
    except (TypeError, ValueError) as e:
        raise ValidationError(f'Invalid {field}') from e


def current_user_id():
    return parse_uuid(get_jwt_identity(), 'user_id')


def current_email():
    return get_jwt().get('email')


def require_owner(resource):
    if resource.user_id != current_user_id():
        raise ForbiddenError('Not your resource')
    return resource


def timestamp_field(raw, field):
    if raw is None:
        raise ValidationError(f'Missing {field}')
    try:
        return parse_timestamp(raw)
    except ValueError as e:
        raise ValidationError(f'Invalid {field}, expected ISO-8601') from e


def point_field(raw, field='location'):
    try:
        return parse_point(raw)
    except ValueError as e:
        raise ValidationError(f'Invalid {field}: {e}') from e


def paging():
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)
    return max(1, min(limit, MAX_PAGE_SIZE)), max(0, offset)
