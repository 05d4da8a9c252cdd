from flask import Blueprint, jsonify
from flask_jwt_extended import jwt_required

from bikeshare.errors import ValidationError
from bikeshare.integrations import now
from bikeshare.routes import current_user_id, json_body, paging
from bikeshare.services import loyalty_service

loyalty_bp = Blueprint('loyalty', __name__)


@loyalty_bp.route('', methods=['GET'])
@jwt_required()
def get_account():
    account = loyalty_service.get_account(current_user_id())
    return jsonify(account.to_dict()), 200


@loyalty_bp.route('/ledger', methods=['GET'])
@jwt_required()
def get_ledger():
    limit, offset = paging()
    entries = loyalty_service.ledger_entries(current_user_id(), limit=limit, offset=offset)
    return jsonify({'entries': [e.to_dict() for e in entries]}), 200


@loyalty_bp.route('/rewards', methods=['GET'])
@jwt_required()
def list_rewards():
    balance = loyalty_service.get_account(current_user_id()).points_balance
    rewards = [
        {
            'code': r.code,
            'description': r.description,
            'points_cost': r.points_cost,
            'unlock_threshold': r.unlock_threshold,
            'unlocked': balance >= r.unlock_threshold,
        }
        for r in loyalty_service.REWARDS.values()
    ]
    return jsonify({'points_balance': balance, 'rewards': rewards}), 200


@loyalty_bp.route('/redeem', methods=['POST'])
@jwt_required()
def redeem():
    """
    Spend loyalty points, either on a catalog reward or a raw amount
    ---
    tags:
      - Loyalty
    security:
      - Bearer: []
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          properties:
            reward_code:
              type: string
            points_cost:
              type: integer
            reason:
              type: string
    responses:
      200:
        description: Redemption successful
      402:
        description: Insufficient points
      404:
        description: Unknown reward
    """
    data = json_body()
    user_id = current_user_id()

    if data.get('reward_code'):
        account = loyalty_service.redeem_reward(user_id, data['reward_code'], now=now())
    elif 'points_cost' in data:
        account = loyalty_service.redeem(
            user_id, data['points_cost'], data.get('reason') or 'Redemption', now=now()
        )
    else:
        raise ValidationError('Missing reward_code or points_cost')

    return jsonify({'message': 'Redemption successful', 'points_balance': account.points_balance}), 200


@loyalty_bp.route('/recalculate', methods=['POST'])
@jwt_required()
def recalculate():
    account = loyalty_service.recalculate_balance(current_user_id(), now=now())
    return jsonify(account.to_dict()), 200
