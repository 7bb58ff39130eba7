"""
Telegram Channel Adapter — Bot API webhook integration.

Uses python-telegram-bot as a plain Bot API client (no Application/polling):
updates arrive on ``POST /telegram/webhook`` and are parsed with
``Update.de_json``.

The bot token is read from a ``BotTokenCell`` on every call, so a token set
through ``/telegram/register`` takes effect without a restart.

Requires: python-telegram-bot
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from telegram import Bot, Message, ReactionTypeEmoji, ReplyParameters, Update
from telegram.constants import ChatAction
from telegram.error import TelegramError as PTBError

from chatrelay.agent.channels.base import (
    Attachment,
    AttachmentCategory,
    BaseChannel,
    ChannelType,
    MessageEnvelope,
    StopIndicator,
)
from chatrelay.config import BotTokenCell
from chatrelay.errors import DeliveryFailed, TelegramError

logger = logging.getLogger(__name__)

# Telegram message length limit
TG_MAX_LEN = 4096

TYPING_INTERVAL_SECONDS = 4.0
ACK_REACTION = "👀"

# (audio bytes, filename) -> transcript
Transcriber = Callable[[bytes, str], Awaitable[str]]

_IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp")


def split_message(text: str, max_len: int = TG_MAX_LEN) -> List[str]:
    """
    Split a long message into chunks that fit Telegram's limit.
    Prefers paragraph, line, then word boundaries.
    """
    if len(text) <= max_len:
        return [text]

    chunks: List[str] = []
    while text:
        if len(text) <= max_len:
            chunks.append(text)
            break

        split_at = text.rfind("\n\n", 0, max_len)
        if split_at < max_len // 4:
            split_at = text.rfind("\n", 0, max_len)
        if split_at < max_len // 4:
            split_at = text.rfind(" ", 0, max_len)
        if split_at < max_len // 4:
            split_at = max_len

        chunks.append(text[:split_at])
        text = text[split_at:].lstrip()

    return chunks


class TelegramChannel(BaseChannel):
    """Adapter for a Telegram bot (asynchronous, fire-and-forget)."""

    def __init__(
        self,
        token_cell: BotTokenCell,
        allowed_chat_id: Optional[str] = None,
        verification_code: Optional[str] = None,
        transcriber: Optional[Transcriber] = None,
    ):
        super().__init__(ChannelType.TELEGRAM)
        self.token_cell = token_cell
        self.allowed_chat_id = str(allowed_chat_id) if allowed_chat_id else None
        self.verification_code = verification_code or None
        self.transcriber = transcriber
        self._bot: Optional[Tuple[str, Bot]] = None

    # ------------------------------------------------------------------
    # Bot client
    # ------------------------------------------------------------------

    def get_bot(self) -> Optional[Bot]:
        """Bot for the active token, rebuilt when the token changes."""
        token = self.token_cell.get()
        if not token:
            return None
        if self._bot is None or self._bot[0] != token:
            self._bot = (token, Bot(token=token))
        return self._bot[1]

    def _require_bot(self) -> Bot:
        bot = self.get_bot()
        if bot is None:
            raise DeliveryFailed("Telegram bot token not configured")
        return bot

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def receive(self, raw: Dict[str, Any]) -> Optional[MessageEnvelope]:
        bot = self.get_bot()
        try:
            update = Update.de_json(raw, bot)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"[TELEGRAM] Unparseable update: {e}")
            return None

        message = update.message if update else None
        if message is None or message.chat is None:
            return None

        chat_id = str(message.chat.id)
        text = message.text or message.caption or ""

        if self.verification_code and text.strip() == self.verification_code:
            await self._reply_chat_id(chat_id)
            return None

        if self.allowed_chat_id and chat_id != self.allowed_chat_id:
            logger.info(f"[TELEGRAM] Ignoring message from chat {chat_id}")
            return None

        attachments: List[Attachment] = []
        if bot is not None:
            attachments = await self._download_attachments(bot, message)
            transcript = await self._transcribe(bot, message)
            if transcript:
                text = f"{text}\n{transcript}".strip() if text else transcript
        elif message.photo or message.document or message.voice or message.audio:
            logger.warning("[TELEGRAM] No bot token; media skipped")

        if not text.strip() and not attachments:
            return None

        return MessageEnvelope(
            thread_id=chat_id,
            channel=ChannelType.TELEGRAM,
            text=text,
            attachments=attachments,
            channel_metadata={
                "chat_id": chat_id,
                "message_id": message.message_id,
                "update_id": update.update_id,
            },
        )

    async def _reply_chat_id(self, chat_id: str) -> None:
        try:
            await self.send_message(chat_id, f"Your chat ID is: {chat_id}")
        except DeliveryFailed as e:
            logger.warning(f"[TELEGRAM] Verification reply failed: {e}")

    async def _download(self, bot: Bot, file_id: str) -> bytes:
        file = await bot.get_file(file_id)
        return bytes(await file.download_as_bytearray())

    async def _download_attachments(self, bot: Bot, message: Message) -> List[Attachment]:
        attachments: List[Attachment] = []
        try:
            if message.photo:
                photo = message.photo[-1]  # Largest resolution
                attachments.append(Attachment(
                    category=AttachmentCategory.IMAGE,
                    mime_type="image/jpeg",
                    data=await self._download(bot, photo.file_id),
                ))
            if message.document:
                doc = message.document
                fname = doc.file_name or doc.file_id
                mime = doc.mime_type or "application/octet-stream"
                is_image = mime.startswith("image/") or fname.lower().endswith(_IMAGE_EXTENSIONS)
                attachments.append(Attachment(
                    category=AttachmentCategory.IMAGE if is_image else AttachmentCategory.DOCUMENT,
                    mime_type=mime,
                    data=await self._download(bot, doc.file_id),
                    filename=fname,
                ))
        except PTBError as e:
            logger.error(f"[TELEGRAM] Attachment download failed: {e}")
        return attachments

    async def _transcribe(self, bot: Bot, message: Message) -> str:
        media = message.voice or message.audio
        if media is None:
            return ""
        if self.transcriber is None:
            logger.info("[TELEGRAM] Voice message received but no transcriber configured")
            return ""
        try:
            audio = await self._download(bot, media.file_id)
            filename = getattr(media, "file_name", None) or "voice.ogg"
            transcript = await self.transcriber(audio, filename)
        except Exception as e:
            logger.error(f"[TELEGRAM] Voice transcription failed: {e}")
            return ""
        logger.info(f"[TELEGRAM] Voice transcribed ({len(transcript)} chars)")
        return transcript

    async def acknowledge(self, metadata: Dict[str, Any]) -> None:
        bot = self.get_bot()
        if bot is None:
            return
        try:
            await bot.set_message_reaction(
                chat_id=metadata["chat_id"],
                message_id=metadata["message_id"],
                reaction=[ReactionTypeEmoji(ACK_REACTION)],
            )
        except Exception as e:
            logger.debug(f"[TELEGRAM] Acknowledge failed: {e}")

    def start_processing_indicator(self, metadata: Dict[str, Any]) -> StopIndicator:
        bot = self.get_bot()
        chat_id = metadata.get("chat_id")
        if bot is None or not chat_id:
            return super().start_processing_indicator(metadata)

        async def _typing_loop():
            while True:
                try:
                    await bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING)
                except PTBError as e:
                    logger.debug(f"[TELEGRAM] Typing action failed: {e}")
                await asyncio.sleep(TYPING_INTERVAL_SECONDS)

        task = asyncio.create_task(_typing_loop())

        def stop() -> None:
            if not task.done():
                task.cancel()

        return stop

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_response(self, thread_id: str, text: str, metadata: Dict[str, Any]) -> None:
        chat_id = metadata.get("chat_id") or thread_id
        await self.send_message(chat_id, text, reply_to=metadata.get("message_id"))

    async def send_message(
        self, chat_id: str, text: str, reply_to: Optional[int] = None
    ) -> None:
        """Send ``text`` to a chat, split at the platform limit."""
        bot = self._require_bot()
        try:
            for i, chunk in enumerate(split_message(text)):
                reply = None
                if i == 0 and reply_to:
                    reply = ReplyParameters(message_id=reply_to, allow_sending_without_reply=True)
                await bot.send_message(chat_id=chat_id, text=chunk, reply_parameters=reply)
        except PTBError as e:
            raise DeliveryFailed(f"Telegram send failed: {e}", {"chat_id": chat_id}) from e

    async def register_webhook(
        self, bot_token: str, webhook_url: str, secret_token: Optional[str] = None
    ) -> bool:
        """Point the bot at ``webhook_url``; on success the token becomes active."""
        bot = Bot(token=bot_token)
        try:
            result = await bot.set_webhook(url=webhook_url, secret_token=secret_token)
        except PTBError as e:
            raise TelegramError(f"setWebhook failed: {e}") from e
        self.token_cell.set(bot_token)
        logger.info("[TELEGRAM] Webhook registered, bot token updated")
        return result
