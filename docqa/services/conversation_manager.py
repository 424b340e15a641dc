"""Conversation manager for multi-turn conversation support."""
import logging
import threading
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from docqa.config import MAX_HISTORY_MESSAGES
from docqa.models.conversation import Conversation, QueryContext, Turn

logger = logging.getLogger(__name__)


class ConversationManager:
    """Keeps conversations, their turns and their query contexts in memory."""

    def __init__(self, max_history_messages: int = MAX_HISTORY_MESSAGES):
        self.max_history_messages = max_history_messages
        self._conversations: Dict[str, Conversation] = {}
        self._lock = threading.Lock()
        logger.info("ConversationManager initialized")

    def get_or_create_conversation(self, conversation_id: Optional[str] = None) -> Conversation:
        """
        Get existing conversation or create new one.

        Args:
            conversation_id: Optional existing conversation ID

        Returns:
            Conversation object with ID, turns and query context
        """
        with self._lock:
            if conversation_id:
                conversation = self._conversations.get(conversation_id)
                if conversation is not None:
                    logger.debug(
                        f"Retrieved existing conversation: {conversation_id} with {len(conversation.turns)} turns"
                    )
                    return conversation
                logger.warning(f"Conversation {conversation_id} not found, creating new one")

            conversation = Conversation(
                conversation_id=self._generate_conversation_id(),
                turns=[],
                created_at=datetime.now()
            )
            self._conversations[conversation.conversation_id] = conversation

        logger.info(f"Created new conversation: {conversation.conversation_id}")
        return conversation

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            return self._conversations.get(conversation_id)

    def add_turn(self, conversation_id: str, query: str, response: str) -> None:
        """
        Add query-response pair to conversation history.

        Raises:
            KeyError: If the conversation does not exist
        """
        with self._lock:
            conversation = self._conversations[conversation_id]
            conversation.turns.append(Turn(query=query, response=response, timestamp=datetime.now()))
        logger.info(f"Added turn to conversation {conversation_id}")

    def get_history(self, conversation_id: str) -> List[Dict[str, str]]:
        """
        Get recent history as chat messages, oldest first.

        Returns:
            At most ``max_history_messages`` ``{"role", "content"}`` dicts
        """
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            turns = list(conversation.turns) if conversation else []

        messages: List[Dict[str, str]] = []
        for turn in turns:
            messages.append({"role": "user", "content": turn.query})
            messages.append({"role": "assistant", "content": turn.response})
        return messages[-self.max_history_messages:] if self.max_history_messages else []

    def get_query_context(self, conversation_id: str) -> QueryContext:
        return self.get_or_create_conversation(conversation_id).query_context

    def clear_conversation(self, conversation_id: str) -> bool:
        """
        Forget a conversation's turns and query context.

        Returns:
            False if the conversation does not exist
        """
        with self._lock:
            conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return False

        # Wait for any in-flight retrieval on this context
        with conversation.query_context.lock:
            conversation.query_context.reset()
        with self._lock:
            conversation.turns.clear()

        logger.info(f"Cleared conversation {conversation_id}")
        return True

    @staticmethod
    def _generate_conversation_id() -> str:
        """Generate unique conversation ID in format 'conv_<12 hex>'."""
        return f"conv_{uuid.uuid4().hex[:12]}"
