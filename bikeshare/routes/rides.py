from flask import Blueprint, jsonify
from flask_jwt_extended import jwt_required

from bikeshare.routes import current_user_id
from bikeshare.services.reservation_service import completed_rides

rides_bp = Blueprint('rides', __name__)


@rides_bp.route('', methods=['GET'])
@jwt_required()
def ride_history():
    """
    Completed rides of the current user, newest first
    ---
    tags:
      - Rides
    security:
      - Bearer: []
    responses:
      200:
        description: Ride history
    """
    rides = completed_rides(current_user_id())
    return jsonify({
        'rides': [r.to_dict() for r in rides],
        'total_distance_km': round(sum(r.distance_km or 0.0 for r in rides), 3),
    }), 200
