"""
送信メッセージの引き渡し

件名・本文・宛先が確定したメッセージを外部の配信手段へ渡します。
コア処理は配信の成否を待ちません。失敗はログに残し、操作自体は失敗させません。
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class OutboundMessage(BaseModel):
    """送信メッセージ"""
    recipient: str = Field(..., description="宛先メールアドレス")
    subject: str = Field(..., description="件名")
    body: str = Field(..., description="本文")
    link: Optional[str] = Field(None, description="本文に含まれるアクセスリンク")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class MessageTemplate(BaseModel):
    """メッセージテンプレート"""
    template_id: str = Field(..., description="テンプレートID")
    subject: str = Field(..., description="件名テンプレート")
    template: str = Field(..., description="本文テンプレート")
    variables: List[str] = Field(default_factory=list, description="テンプレート変数")

    def render(self, recipient: str, link: Optional[str] = None, **values: str) -> OutboundMessage:
        """変数を埋め込んでメッセージを作成"""
        if link is not None:
            values.setdefault("link", link)
        missing = [name for name in self.variables if name not in values]
        if missing:
            raise KeyError(f"テンプレート変数が不足しています: {', '.join(missing)}")
        return OutboundMessage(
            recipient=recipient,
            subject=self.subject.format(**values),
            body=self.template.format(**values),
            link=link
        )


MESSAGE_TEMPLATES: Dict[str, MessageTemplate] = {
    "speaker_invitation": MessageTemplate(
        template_id="speaker_invitation",
        subject="Invitation to give a seminar",
        template="""Dear {full_name},

On behalf of {host}, we would like to invite you to give a seminar.

Please choose one of the available dates and tell us the title of your talk here:
{link}

We would appreciate your answer before {response_deadline}.

Best regards,
{organizer_name}""",
        variables=["full_name", "host", "link", "response_deadline", "organizer_name"]
    ),
    "signup_invitation": MessageTemplate(
        template_id="signup_invitation",
        subject="Invitation to join as {role}",
        template="""Dear {full_name},

You have been invited to join the seminar organisation team as a {role}.

Your affiliation: {affiliation}

Please use the following link to complete your registration:
{link}

This invitation will remain valid for {valid_days} days.

Best regards,
{organizer_name}""",
        variables=["full_name", "role", "affiliation", "link", "valid_days", "organizer_name"]
    ),
}


class MessageSender(ABC):
    """送信手段のインターフェース"""

    @abstractmethod
    async def send(self, message: OutboundMessage) -> None:
        """メッセージを配信手段へ渡す（失敗時は例外）"""
        pass

    async def hand_off(self, message: OutboundMessage) -> bool:
        """配信を試み、失敗してもログに残して False を返す"""
        try:
            await self.send(message)
            return True
        except Exception as e:
            logger.warning(f"メッセージを配信できませんでした: {message.recipient} - {message.subject} ({e})")
            return False


class LoggingMessageSender(MessageSender):
    """ログ出力のみを行う送信手段（開発用）。送信済みメッセージを保持します。"""

    def __init__(self):
        self.sent: List[OutboundMessage] = []

    async def send(self, message: OutboundMessage) -> None:
        logger.info(f"メッセージ送信: {message.recipient} - {message.subject}")
        self.sent.append(message)
