import logging

from flask import Blueprint, current_app, request, jsonify
import stripe

from bikeshare.errors import AlreadySettledError, NotFoundError
from bikeshare.integrations import collaborator, now
from bikeshare.routes import parse_uuid
from bikeshare.services import payment_service

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint('webhooks', __name__)

# event type -> positive confirmation?
# A declined attempt (payment_intent.payment_failed) leaves the intent open for
# another card, so only cancellation settles a payment as failed.
HANDLED_EVENTS = {
    'payment_intent.succeeded': True,
    'payment_intent.canceled': False,
}


@webhooks_bp.route('/stripe', methods=['POST'])
def stripe_webhook():
    """
    Handle Stripe Webhooks
    ---
    tags:
      - Webhooks
    responses:
      200:
        description: Event processed
      400:
        description: Invalid payload or signature
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get('Stripe-Signature')

    try:
        event = stripe.Webhook.construct_event(
            payload, sig_header, current_app.config['STRIPE_WEBHOOK_SECRET']
        )
    except ValueError:
        return jsonify({'error': 'Invalid payload'}), 400
    except stripe.SignatureVerificationError:
        return jsonify({'error': 'Invalid signature'}), 400

    if event['type'] in HANDLED_EVENTS:
        handle_payment_intent(event['data']['object'], HANDLED_EVENTS[event['type']])
    elif event['type'] == 'payment_intent.payment_failed':
        payment_intent = event['data']['object']
        logger.info(
            "PaymentIntent %s attempt declined, payment %s stays pending",
            payment_intent.get('id'), payment_intent.get('metadata', {}).get('payment_id'),
        )

    return jsonify({'status': 'success'}), 200


def handle_payment_intent(payment_intent, success):
    payment_id = payment_intent.get('metadata', {}).get('payment_id')
    if not payment_id:
        logger.warning("PaymentIntent %s has no payment_id in metadata", payment_intent.get('id'))
        return

    try:
        payment_service.confirm_payment(
            parse_uuid(payment_id, 'payment_id'),
            success,
            gateway=collaborator('gateway'),
            mailer=collaborator('mailer'),
            now=now(),
        )
    except NotFoundError:
        logger.warning("Payment %s not found for PaymentIntent %s", payment_id, payment_intent.get('id'))
    except AlreadySettledError as e:
        # acknowledged so Stripe stops redelivering
        logger.error("Webhook for payment %s contradicts its outcome: %s", payment_id, e.message)
