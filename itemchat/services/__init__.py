from dataclasses import dataclass

from motor.motor_asyncio import AsyncIOMotorDatabase

from itemchat.core.config import Settings
from itemchat.realtime.bus import Bus
from itemchat.realtime.channel import LiveDeliveryChannel
from itemchat.repositories.conversation_repository import ConversationRepository
from itemchat.repositories.item_repository import ItemRepository
from itemchat.repositories.message_repository import MessageRepository
from itemchat.repositories.user_repository import UserRepository
from itemchat.services.conversation_directory import ConversationDirectory
from itemchat.services.conversation_list import ConversationListProjector
from itemchat.services.message_store import MessageStore


@dataclass
class ChatServices:

    directory: ConversationDirectory
    store: MessageStore
    channel: LiveDeliveryChannel
    projector: ConversationListProjector
    bus: Bus

    async def ensure_indexes(self, db: AsyncIOMotorDatabase) -> None:
        await ConversationRepository(db).ensure_indexes()
        await MessageRepository(db).ensure_indexes()


def build_services(db: AsyncIOMotorDatabase, settings: Settings, bus: Bus) -> ChatServices:
    convo_repo = ConversationRepository(db)
    msg_repo = MessageRepository(db)
    item_repo = ItemRepository(db)
    user_repo = UserRepository(db)
    channel = LiveDeliveryChannel(
        bus,
        buffer_size=settings.SUBSCRIPTION_BUFFER_SIZE,
        idle_timeout=settings.SUBSCRIPTION_IDLE_TIMEOUT,
    )
    projector = ConversationListProjector(
        convo_repo,
        item_repo,
        user_repo,
        ttl=settings.SUMMARY_CACHE_TTL,
        limit=settings.CONVERSATION_LIST_LIMIT,
    )
    return ChatServices(
        directory=ConversationDirectory(convo_repo, item_repo, projector),
        store=MessageStore(
            msg_repo,
            convo_repo,
            channel,
            projector,
            max_length=settings.MAX_MESSAGE_LENGTH,
            settle_timeout=settings.SEQ_SETTLE_TIMEOUT,
        ),
        channel=channel,
        projector=projector,
        bus=bus,
    )
