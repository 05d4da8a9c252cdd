from flask import Blueprint, jsonify
from flask_jwt_extended import jwt_required

from bikeshare.errors import ValidationError
from bikeshare.integrations import collaborator, now
from bikeshare.routes import current_email, json_body, parse_uuid, require_owner
from bikeshare.services import payment_service, reservation_service

payments_bp = Blueprint('payments', __name__)


@payments_bp.route('', methods=['POST'])
@jwt_required()
def start_payment():
    """
    Start paying for a completed ride
    ---
    tags:
      - Payments
    security:
      - Bearer: []
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - reservation_id
            - method
          properties:
            reservation_id:
              type: string
            method:
              type: string
              enum: [card, crypto, qr]
            amount:
              type: number
              description: Must equal the ride cost when given
    responses:
      201:
        description: Pending payment
      409:
        description: Ride not completed, already paid, or another payment pending
      422:
        description: Amount does not match the ride cost
      502:
        description: Payment gateway unavailable
    """
    data = json_body()
    if not data.get('reservation_id') or not data.get('method'):
        raise ValidationError('Missing reservation_id or method')

    reservation_id = parse_uuid(data['reservation_id'], 'reservation_id')
    require_owner(reservation_service.get_reservation(reservation_id))

    payment = payment_service.start_payment(
        reservation_id,
        data['method'],
        amount=data.get('amount'),
        gateway=collaborator('gateway'),
        now=now(),
    )
    return jsonify(payment.to_dict()), 201


@payments_bp.route('/<uuid:payment_id>', methods=['GET'])
@jwt_required()
def get_payment(payment_id):
    payment = require_owner(payment_service.get_payment(payment_id))
    return jsonify(payment.to_dict()), 200


@payments_bp.route('/<uuid:payment_id>/confirm', methods=['POST'])
@jwt_required()
def confirm_payment(payment_id):
    """
    Confirm a payment
    ---
    tags:
      - Payments
    security:
      - Bearer: []
    parameters:
      - in: body
        name: body
        schema:
          type: object
          properties:
            success:
              type: boolean
              default: true
            tx_hash:
              type: string
              description: Wallet transaction hash (crypto)
    responses:
      200:
        description: Payment settled
      202:
        description: Still pending, confirmation continues in the background
      409:
        description: Already settled with a different outcome
    """
    payment = require_owner(payment_service.get_payment(payment_id))
    data = json_body()
    success = data.get('success', True)
    if not isinstance(success, bool):
        raise ValidationError('success must be a boolean')

    payment = payment_service.confirm_payment(
        payment_id,
        success,
        external_ref=data.get('tx_hash') or data.get('external_ref'),
        gateway=collaborator('gateway'),
        chain=collaborator('chain'),
        mailer=collaborator('mailer'),
        address=current_email(),
        now=now(),
    )

    if payment.status == 'pending':
        if payment.method == 'crypto' and payment.external_ref:
            collaborator('watcher').schedule(payment.payment_id, payment.external_ref, address=current_email())
        return jsonify(payment.to_dict()), 202
    return jsonify(payment.to_dict()), 200
