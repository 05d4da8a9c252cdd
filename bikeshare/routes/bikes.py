from datetime import timedelta

from flask import Blueprint, request, jsonify

from bikeshare.errors import NotFoundError, ValidationError
from bikeshare.extensions import db
from bikeshare.integrations import now
from bikeshare.models.bike import BIKE_STATUSES, Bike
from bikeshare.routes import timestamp_field
from bikeshare.services import availability
from bikeshare.services.reservation_service import check_availability

bikes_bp = Blueprint('bikes', __name__)


@bikes_bp.route('', methods=['GET'])
def list_bikes():
    """
    List bikes, optionally filtered by status
    ---
    tags:
      - Bikes
    parameters:
      - in: query
        name: status
        type: string
        enum: [available, reserved, active, maintenance]
    responses:
      200:
        description: Bikes
    """
    status = request.args.get('status')
    query = Bike.query
    if status:
        if status not in BIKE_STATUSES:
            raise ValidationError('Unknown bike status', allowed=list(BIKE_STATUSES))
        query = query.filter_by(status=status)
    bikes = query.order_by(Bike.name.asc()).all()
    return jsonify({'bikes': [b.to_dict() for b in bikes]}), 200


@bikes_bp.route('/<uuid:bike_id>/availability', methods=['GET'])
def bike_availability(bike_id):
    """
    Check whether a bike is free for a window
    ---
    tags:
      - Bikes
    parameters:
      - in: path
        name: bike_id
        type: string
        required: true
      - in: query
        name: start
        type: string
        required: true
      - in: query
        name: end
        type: string
        required: true
    responses:
      200:
        description: Availability result
      400:
        description: Invalid interval
      404:
        description: Bike not found
    """
    start = timestamp_field(request.args.get('start'), 'start')
    end = timestamp_field(request.args.get('end'), 'end')

    available = check_availability(bike_id, start, end)
    return jsonify({
        'bike_id': str(bike_id),
        'start': start.isoformat(),
        'end': end.isoformat(),
        'available': available,
    }), 200


@bikes_bp.route('/<uuid:bike_id>/free-windows', methods=['GET'])
def bike_free_windows(bike_id):
    """
    Free slots for a bike, defaulting to the next 24 hours
    ---
    tags:
      - Bikes
    responses:
      200:
        description: Free windows
      404:
        description: Bike not found
    """
    if not db.session.get(Bike, bike_id):
        raise NotFoundError('Bike not found', bike_id=str(bike_id))

    start_raw = request.args.get('start')
    end_raw = request.args.get('end')
    start = timestamp_field(start_raw, 'start') if start_raw else now()
    end = timestamp_field(end_raw, 'end') if end_raw else start + timedelta(hours=24)

    windows = availability.free_windows(bike_id, start, end)
    return jsonify({
        'bike_id': str(bike_id),
        'windows': [{'start': s.isoformat(), 'end': e.isoformat()} for s, e in windows],
    }), 200
