"""Conversation client: builds chat requests from history and parses responses."""

import httpx

from ..errors import MalformedResponseError, TransportError, TransportGenerationError
from ..log_config import get_logger
from ..types import GenerationRequest, Message, Role
from .transport import TransportRetrier

SYSTEM_PROMPT = """You are an expert Python code generator. Generate clean, well-commented, complete executable Python code based on user requests.
RULES:
1. Output ONLY valid, executable Python code. No markdown text and no explanations outside comments.
2. Do not include phrases like 'Here is the code' or 'Step 1:'.
3. Do not use markdown headings outside of Python comments.
4. Start directly with Python code (imports, functions, or main logic).
5. Import any external libraries at the top of the file.
6. Define every variable and constant before it is used.
7. Handle errors with try/except where an operation can fail.
8. Do not load external files (images, sounds, fonts); generate assets in code.
9. The code must run with `python3 <file>.py` without errors."""

REFINE_TEMPLATE = "Please refine the previous code: {instruction}"

MIN_HISTORY_MESSAGES = 2


def trim_history(history: list[Message], max_messages: int) -> None:
    """Evict the oldest user/assistant pairs until ``history`` fits.

    A user turn leaves together with the assistant reply that follows it, so
    the remaining history never opens on an orphan reply. System messages
    stay, and the last two messages (the most recent exchange) are never
    evicted, so a maximum below 2 behaves as 2.
    """
    limit = max(max_messages, MIN_HISTORY_MESSAGES)
    while len(history) > limit:
        evictable = [
            i
            for i in range(len(history) - MIN_HISTORY_MESSAGES)
            if history[i].role != Role.SYSTEM
        ]
        if not evictable:
            break
        doomed = evictable[:1]
        if (
            history[doomed[0]].role == Role.USER
            and len(evictable) > 1
            and history[evictable[1]].role == Role.ASSISTANT
        ):
            doomed.append(evictable[1])
        for index in reversed(doomed):
            del history[index]


def parse_completion(response: httpx.Response) -> str:
    """Return ``choices[0].message.content`` from a chat-completion body."""
    try:
        data = response.json()
    except ValueError as e:
        raise MalformedResponseError(
            f"Response is not JSON: {response.text[:200]}"
        ) from e

    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as e:
        raise MalformedResponseError(f"No choices in response: {str(data)[:200]}") from e

    if not isinstance(content, str) or not content.strip():
        raise MalformedResponseError("Response contained empty content")
    return content


class ConversationClient:
    """
    Sends the ordered conversation history through the transport retrier.

    History is owned by the caller's session; it is mutated only after a
    successful response, so a failed call leaves no partial turn behind.
    """

    def __init__(
        self,
        transport: TransportRetrier,
        model: str,
        max_tokens: int,
        temperature: float,
        max_history_messages: int = 20,
        system_prompt: str = SYSTEM_PROMPT,
    ):
        self.transport = transport
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_history_messages = max_history_messages
        self.system_prompt = system_prompt
        self.log = get_logger("conversation", model=model)

    def build_request(self, history: list[Message], user_turn: Message) -> GenerationRequest:
        messages = (Message(role=Role.SYSTEM, content=self.system_prompt), *history, user_turn)
        return GenerationRequest(
            messages=messages,
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )

    async def generate(self, history: list[Message], prompt: str) -> str:
        """Send ``prompt`` as a new user turn and return the raw assistant text.

        Raises:
            TransportGenerationError: The transport gave up (cause chained).
            MalformedResponseError: The 2xx body is unusable. Not retried.
        """
        user_turn = Message(role=Role.USER, content=prompt)
        request = self.build_request(history, user_turn)
        self.log.info(
            "conversation.generate",
            history_len=len(history),
            prompt_chars=len(prompt),
        )

        try:
            response = await self.transport.send(request)
        except TransportError as e:
            self.log.warn("conversation.failed", exc=e)
            raise TransportGenerationError(e) from e

        content = parse_completion(response)

        history.append(user_turn)
        history.append(Message(role=Role.ASSISTANT, content=content))
        trim_history(history, self.max_history_messages)
        self.log.debug("conversation.recorded", history_len=len(history))
        return content

    async def refine(self, history: list[Message], instruction: str) -> str:
        """Ask for a change to the previously generated code."""
        return await self.generate(history, REFINE_TEMPLATE.format(instruction=instruction))
