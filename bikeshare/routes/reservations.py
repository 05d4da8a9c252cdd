from flask import Blueprint, jsonify
from flask_jwt_extended import jwt_required

from bikeshare.errors import ValidationError
from bikeshare.integrations import collaborator, now
from bikeshare.routes import (
    current_email,
    current_user_id,
    json_body,
    paging,
    parse_uuid,
    point_field,
    require_owner,
    timestamp_field,
)
from bikeshare.services import reservation_service, ride_tracker, unlock_service

reservations_bp = Blueprint('reservations', __name__)


@reservations_bp.route('', methods=['POST'])
@jwt_required()
def create_reservation():
    """
    Reserve a bike for a time window
    ---
    tags:
      - Reservations
    security:
      - Bearer: []
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - bike_id
            - start_time
            - end_time
          properties:
            bike_id:
              type: string
            start_time:
              type: string
              format: date-time
            end_time:
              type: string
              format: date-time
            pickup_location:
              type: object
              properties:
                lat:
                  type: number
                lng:
                  type: number
    responses:
      201:
        description: Reservation created
      400:
        description: Invalid input or interval
      404:
        description: Bike not found
      409:
        description: Bike already booked, or you already hold a reservation
    """
    data = json_body()
    if not data.get('bike_id'):
        raise ValidationError('Missing bike_id')

    bike_id = parse_uuid(data['bike_id'], 'bike_id')
    start = timestamp_field(data.get('start_time'), 'start_time')
    end = timestamp_field(data.get('end_time'), 'end_time')
    pickup = point_field(data.get('pickup_location'), 'pickup_location')

    reservation = reservation_service.create_reservation(
        bike_id, current_user_id(), start, end, pickup_location=pickup, now=now()
    )
    return jsonify(reservation.to_dict()), 201


@reservations_bp.route('/current', methods=['GET'])
@jwt_required()
def current_reservation():
    reservation = reservation_service.current_reservation(current_user_id())
    return jsonify({'reservation': reservation.to_dict() if reservation else None}), 200


@reservations_bp.route('', methods=['GET'])
@jwt_required()
def list_reservations():
    limit, offset = paging()
    reservations = reservation_service.list_reservations(current_user_id(), limit=limit, offset=offset)
    return jsonify({'reservations': [r.to_dict() for r in reservations]}), 200


@reservations_bp.route('/<uuid:reservation_id>', methods=['GET'])
@jwt_required()
def get_reservation(reservation_id):
    reservation = require_owner(reservation_service.get_reservation(reservation_id))
    return jsonify(reservation.to_dict()), 200


@reservations_bp.route('/<uuid:reservation_id>/cancel', methods=['POST'])
@jwt_required()
def cancel_reservation(reservation_id):
    """
    Cancel an upcoming or active reservation
    ---
    tags:
      - Reservations
    security:
      - Bearer: []
    responses:
      200:
        description: Reservation cancelled
      403:
        description: Not your reservation
      409:
        description: Already cancelled or completed
    """
    require_owner(reservation_service.get_reservation(reservation_id))
    reservation = reservation_service.cancel_reservation(
        reservation_id, bike_commands=collaborator('bike_commands'), now=now()
    )
    return jsonify(reservation.to_dict()), 200


@reservations_bp.route('/<uuid:reservation_id>/unlock-challenges', methods=['POST'])
@jwt_required()
def issue_unlock_challenge(reservation_id):
    """
    Issue an unlock challenge (qr or email)
    ---
    tags:
      - Unlock
    security:
      - Bearer: []
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - method
          properties:
            method:
              type: string
              enum: [qr, email]
            email:
              type: string
              description: Overrides the address in the access token
    responses:
      201:
        description: Challenge issued
      409:
        description: Reservation is not upcoming
      502:
        description: Email could not be sent
    """
    require_owner(reservation_service.get_reservation(reservation_id))
    data = json_body()
    method = data.get('method')

    ref = unlock_service.issue_unlock_challenge(
        reservation_id,
        method,
        mailer=collaborator('mailer'),
        address=data.get('email') or current_email(),
        now=now(),
    )
    body = {
        'challenge_id': str(ref.challenge_id),
        'method': ref.method,
        'expires_at': ref.expires_at.isoformat(),
    }
    if ref.token:
        body['token'] = ref.token
    else:
        body['message'] = 'Unlock code sent by email'
    return jsonify(body), 201


@reservations_bp.route('/<uuid:reservation_id>/unlock', methods=['POST'])
@jwt_required()
def verify_unlock(reservation_id):
    """
    Verify an unlock challenge and start the ride
    ---
    tags:
      - Unlock
    security:
      - Bearer: []
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - method
            - payload
          properties:
            method:
              type: string
              enum: [qr, email]
            payload:
              type: string
              description: Scanned QR string or the emailed code
    responses:
      200:
        description: Bike unlocked, ride active
      400:
        description: Wrong code
      409:
        description: Reservation not upcoming or bike busy
      410:
        description: Challenge expired, request a new one
    """
    require_owner(reservation_service.get_reservation(reservation_id))
    data = json_body()
    payload = data.get('payload', data.get('code'))

    reservation = unlock_service.verify_unlock(
        reservation_id,
        data.get('method'),
        payload,
        bike_commands=collaborator('bike_commands'),
        now=now(),
    )
    return jsonify(reservation.to_dict()), 200


@reservations_bp.route('/<uuid:reservation_id>/progress', methods=['POST'])
@jwt_required()
def record_progress(reservation_id):
    require_owner(reservation_service.get_reservation(reservation_id))
    data = json_body()
    point = point_field(data, 'point')
    recorded_at = data.get('recorded_at')
    recorded_at = timestamp_field(recorded_at, 'recorded_at') if recorded_at else now()

    reservation = ride_tracker.record_ride_progress(reservation_id, point, recorded_at=recorded_at)
    return jsonify({
        'reservation_id': str(reservation.reservation_id),
        'distance_km': round(reservation.distance_km or 0.0, 3),
    }), 200


@reservations_bp.route('/<uuid:reservation_id>/end', methods=['POST'])
@jwt_required()
def end_ride(reservation_id):
    """
    End the ride and freeze distance and cost
    ---
    tags:
      - Rides
    security:
      - Bearer: []
    responses:
      200:
        description: Ride completed
      409:
        description: Ride is not active
    """
    require_owner(reservation_service.get_reservation(reservation_id))
    summary = ride_tracker.end_ride(
        reservation_id, bike_commands=collaborator('bike_commands'), now=now()
    )
    return jsonify({
        'reservation_id': str(summary.reservation_id),
        'distance_km': summary.distance_km,
        'cost': float(summary.cost),
        'duration_seconds': summary.duration_seconds,
    }), 200
