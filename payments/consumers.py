import logging

from asgiref.sync import async_to_sync
from channels.generic.websocket import JsonWebsocketConsumer

from .notifications import EVENT_NAME, channel_name

logger = logging.getLogger(__name__)


def can_listen(user, advertiser_id):
    """Advertisers can only listen to their own payment updates."""
    if user is None or not user.is_authenticated:
        return False
    advertiser = getattr(user, 'advertiser', None)
    return advertiser is not None and str(advertiser.id) == str(advertiser_id)


class PaymentStatusConsumer(JsonWebsocketConsumer):
    """
    Private per-advertiser channel `payment.{advertiser_id}`.
    """

    def connect(self):
        advertiser_id = self.scope['url_route']['kwargs']['advertiser_id']
        if not can_listen(self.scope.get('user'), advertiser_id):
            logger.warning("Rejected websocket for payment channel %s", advertiser_id)
            self.close()
            return

        group = channel_name(advertiser_id)
        async_to_sync(self.channel_layer.group_add)(group, self.channel_name)
        # Groups listed here are discarded again on disconnect
        self.groups.append(group)
        self.accept()

    def payment_status_updated(self, event):
        self.send_json({'event': EVENT_NAME, 'data': event['payload']})
