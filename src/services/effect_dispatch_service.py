"""
Effect Dispatch Service
Applies the effects returned by node evaluators through the external collaborators.
"""
import asyncio
from typing import Optional, Callable, Awaitable, Any

# Utils
from utils.log_utils import LogUtil

# Services
from services.internal.channel_service import ChannelService
from services.internal.crm_service import CRMService
from services.internal.email_service import EmailService

# Models
from models.node_result_data import (
    SendMessageEffect, SendTypingEffect, CallWebhookEffect, CreateCRMTaskEffect,
    SendExternalNotificationEffect, SendEmailEffect, SetTagEffect,
    TransferConversationEffect, CloseConversationEffect
)


class EffectDispatchService:
    """
    Maps each effect to one collaborator call.

    Delivery failures are logged and reported as False; they never stop the flow.
    A node's own failure policy (error edge, continue_on_error) is decided by its evaluator.
    """

    def __init__(
        self,
        log_util: LogUtil,
        channel_service: ChannelService,
        crm_service: CRMService,
        email_service: EmailService,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None
    ):
        self.log_util = log_util
        self.channel_service = channel_service
        self.crm_service = crm_service
        self.email_service = email_service
        self.sleep = sleep or asyncio.sleep

    async def apply(self, organization_id: str, conversation_id: str, effect: Any) -> bool:
        try:
            if isinstance(effect, SendMessageEffect):
                if effect.delay_before_seconds > 0:
                    await self.sleep(effect.delay_before_seconds)
                await self.channel_service.send_message(
                    conversation_id=conversation_id,
                    text=effect.text,
                    message_type=effect.message_type,
                    media_url=effect.media_url
                )
            elif isinstance(effect, SendTypingEffect):
                await self.channel_service.send_typing(conversation_id, effect.duration_seconds)
            elif isinstance(effect, CallWebhookEffect):
                # Already performed by the webhook evaluator
                return effect.success
            elif isinstance(effect, CreateCRMTaskEffect):
                await self.crm_service.create_task(
                    organization_id=organization_id,
                    conversation_id=conversation_id,
                    title=effect.title,
                    description=effect.description,
                    due_in_days=effect.due_in_days
                )
            elif isinstance(effect, SendExternalNotificationEffect):
                if effect.channel == "whatsapp":
                    await self.channel_service.send_external_message(conversation_id, effect.recipient or "", effect.message)
                else:
                    await self.crm_service.notify_users(organization_id, conversation_id, effect.message)
            elif isinstance(effect, SendEmailEffect):
                await self.email_service.send(organization_id, effect.to, effect.subject, effect.html)
            elif isinstance(effect, SetTagEffect):
                if effect.add:
                    await self.crm_service.add_tag(organization_id, conversation_id, effect.tag_id)
                else:
                    await self.crm_service.remove_tag(organization_id, conversation_id, effect.tag_id)
            elif isinstance(effect, TransferConversationEffect):
                await self.channel_service.transfer_conversation(conversation_id, effect.transfer_type, effect.target_id)
            elif isinstance(effect, CloseConversationEffect):
                await self.channel_service.close_conversation(conversation_id)
            else:
                self.log_util.warning(
                    service_name="EffectDispatchService",
                    message=f"[EFFECT] Unknown effect {type(effect).__name__} for conversation {conversation_id}"
                )
                return False
            return True

        except Exception as e:
            self.log_util.error(
                service_name="EffectDispatchService",
                message=f"[EFFECT] ❌ Failed to apply {getattr(effect, 'effect_type', type(effect).__name__)} for conversation {conversation_id}: {str(e)}"
            )
            return False
