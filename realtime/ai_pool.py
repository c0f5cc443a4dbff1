"""Ghost participant pool.

Synthetic identities that drop into the global chat now and then. Each profile
is created on demand, reused once its cooldown has passed, and evicted (with
its topic memory) after a long idle period by the janitor sweep.

Only one synthesis runs at a time pool-wide: the generation call is the slow
dependency, and two ghosts answering at once gives the game away.
"""

from __future__ import annotations

import logging
import random
import re
import threading
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from realtime.state import (
    AI_CONTEXT_WINDOW,
    AI_IDLE_EVICTION_SECONDS,
    AI_MAX_RESPONSE_CHARS,
    AI_MEMORY_SIZE,
    AI_RECENT_MESSAGES,
    AI_REPLY_DELAY_RANGE,
    AI_RESPONSE_COOLDOWN_SECONDS,
    AI_REUSE_COOLDOWN_SECONDS,
)

REUSE_PROBABILITY = 0.8
REPLY_TARGET_PROBABILITY = 0.4
REPLY_TARGET_CANDIDATES = 3
NICKNAME_ATTEMPTS = 50


@dataclass(frozen=True)
class Personality:
    name: str
    traits: str
    style: str


PERSONALITIES: tuple[Personality, ...] = (
    Personality(
        "curious",
        "You are curious and inquisitive. You ask interesting questions and enjoy learning from others. You are friendly and engaged.",
        "casual, the odd emoji, short sentences",
    ),
    Personality(
        "funny",
        "You are playful and good-humoured. You like light jokes and witty remarks and keep the mood relaxed.",
        "laid-back, uses slang, sometimes friendly sarcasm",
    ),
    Personality(
        "reflective",
        "You are thoughtful and a bit philosophical. You like sharing insights that make people stop and think.",
        "more formal, well-built sentences, rich vocabulary",
    ),
    Personality(
        "upbeat",
        "You are enthusiastic and energetic. Always positive and encouraging, you love celebrating small things.",
        "lots of emojis, exclamations, vibrant language",
    ),
    Personality(
        "shy",
        "You are reserved and a little shy. You take part, but in a restrained way. You are kind and polite.",
        "short sentences, sometimes hesitant, uses '...' now and then",
    ),
    Personality(
        "wise",
        "You have life experience and like giving advice. You are patient and understanding.",
        "calm, measured, the occasional metaphor",
    ),
)

AI_AVATARS: tuple[str, ...] = (
    "https://api.dicebear.com/7.x/avataaars/svg?seed=Felix",
    "https://api.dicebear.com/7.x/avataaars/svg?seed=Aneka",
    "https://api.dicebear.com/7.x/avataaars/svg?seed=Luna",
    "https://api.dicebear.com/7.x/avataaars/svg?seed=Max",
    "https://api.dicebear.com/7.x/avataaars/svg?seed=Sophie",
    "https://api.dicebear.com/7.x/avataaars/svg?seed=Oliver",
    "https://api.dicebear.com/7.x/avataaars/svg?seed=Emma",
    "https://api.dicebear.com/7.x/avataaars/svg?seed=Noah",
)


@dataclass
class AIProfile:
    identity_id: str
    nickname: str
    avatar_url: str
    personality: Personality
    last_used: float
    memory: deque = field(default_factory=lambda: deque(maxlen=AI_MEMORY_SIZE))

    def public(self) -> dict:
        return {
            "identityId": self.identity_id,
            "nickname": self.nickname,
            "avatarUrl": self.avatar_url,
            "isAI": True,
        }


@dataclass
class SynthesizedReply:
    text: str
    identity_id: str
    nickname: str
    avatar_url: str
    reply_to_id: str | None = None


class _PendingReply:
    def __init__(self, owner_id: str | None, reply: SynthesizedReply):
        self.owner_id = owner_id
        self.reply = reply
        self.cancelled = threading.Event()


class ProfileAllocationError(RuntimeError):
    """No free synthetic nickname could be found."""


# ----------------------------------------------------------------------
# Pure helpers
# ----------------------------------------------------------------------
def human_streak(recent_messages: Sequence[dict]) -> int:
    """Number of trailing human-authored messages."""
    n = 0
    for m in reversed(recent_messages):
        if m.get("isAI"):
            break
        n += 1
    return n


def decide_should_respond(
    recent_messages: Sequence[dict],
    busy: bool,
    cooldown_elapsed: bool,
    rng: random.Random | None = None,
) -> bool:
    if busy or not cooldown_elapsed:
        return False
    if not recent_messages or recent_messages[-1].get("isAI"):
        return False

    streak = human_streak(recent_messages)
    if streak >= 3:
        chance = 0.7
    elif streak == 2:
        chance = 0.5
    elif streak == 1:
        chance = 0.3
    else:
        return False
    return (rng or random).random() < chance


_MARKDOWN_RE = re.compile(r"\*\*|__|\*|`")
_QUOTE_PAIRS = {'"': '"', "'": "'", "“": "”", "‘": "’", "«": "»"}
_SENTENCE_END_RE = re.compile(r"[.!?…](?=\s|$)")


def truncate_response(text: str, max_chars: int = AI_MAX_RESPONSE_CHARS) -> str:
    if len(text) <= max_chars:
        return text
    # One character past the cut, so a "." inside "3.14" is not read as a boundary.
    lookahead = text[: max_chars + 1]
    ends = [m.end() for m in _SENTENCE_END_RE.finditer(lookahead) if m.end() <= max_chars]
    if ends and ends[-1] >= max_chars // 2:
        return text[: ends[-1]].rstrip()
    return text[: max_chars - 3].rstrip() + "..."


def _strip_wrapping_quotes(text: str) -> str:
    while len(text) >= 2:
        opening, closing = text[0], text[-1]
        if _QUOTE_PAIRS.get(opening) != closing:
            break
        inner = text[1:-1]
        # '"a" e "b"' starts and ends with a quote but is not wrapped in one.
        if opening in inner or closing in inner:
            break
        text = inner.strip()
    return text


def clean_response(text: str, max_chars: int = AI_MAX_RESPONSE_CHARS) -> str:
    text = _strip_wrapping_quotes(_MARKDOWN_RE.sub("", text or "").strip())
    return truncate_response(text, max_chars)


def topic_of(text: str) -> str:
    return " ".join(text.split()[:3])


def build_prompt(
    personality: Personality,
    messages: Sequence[dict],
    memory: Sequence[str],
    reply_to: dict | None = None,
) -> str:
    conversation = "\n".join(f"{m.get('nickname', 'anonimo')}: {m.get('text', '')}" for m in messages)
    memory_block = f"\nTopics you have already talked about: {', '.join(memory)}" if memory else ""
    reply_block = ""
    if reply_to:
        reply_block = f"\nYou are replying directly to {reply_to.get('nickname')}: \"{reply_to.get('text')}\"\n"

    return f"""You are taking part in a live anonymous chat on Confeed, a platform where people share things and thoughts anonymously.

PERSONALITY:
{personality.traits}

WRITING STYLE:
{personality.style}

CONVERSATION SO FAR:
{conversation}
{memory_block}
{reply_block}
RULES:
1. Answer NATURALLY and BRIEFLY (2-3 sentences at most).
2. Stay relevant to the conversation.
3. Do NOT introduce yourself and never say you are an AI.
4. Do NOT use markdown formatting.
5. Stay true to your personality.
6. Sometimes ask a question to keep people engaged.
7. Vary between agreeing, disagreeing, adding information or gently changing the subject.
8. Write in the same language and register the others are using.
9. Use emojis to show what is happening or how you feel.

Reply as a real person naturally joining the conversation:"""


# ----------------------------------------------------------------------
# Pool
# ----------------------------------------------------------------------
class AIParticipantPool:
    def __init__(
        self,
        store,
        generator,
        hub=None,
        *,
        reuse_cooldown: float = AI_REUSE_COOLDOWN_SECONDS,
        idle_eviction: float = AI_IDLE_EVICTION_SECONDS,
        response_cooldown: float = AI_RESPONSE_COOLDOWN_SECONDS,
        reply_delay_range: tuple[float, float] = AI_REPLY_DELAY_RANGE,
        context_window: int = AI_CONTEXT_WINDOW,
        memory_size: int = AI_MEMORY_SIZE,
        max_response_chars: int = AI_MAX_RESPONSE_CHARS,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.generator = generator
        self.hub = hub
        self.reuse_cooldown = float(reuse_cooldown)
        self.idle_eviction = float(idle_eviction)
        self.response_cooldown = float(response_cooldown)
        self.reply_delay_range = (float(reply_delay_range[0]), float(reply_delay_range[1]))
        self.context_window = int(context_window)
        self.memory_size = int(memory_size)
        self.max_response_chars = int(max_response_chars)
        self._clock = clock
        self._rng = rng or random.Random()

        self._profiles: dict[str, AIProfile] = {}
        self._recent: deque[dict] = deque(maxlen=AI_RECENT_MESSAGES)
        self._pending: list[_PendingReply] = []
        self._busy = False
        self._closed = False
        self._last_response: float | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, store, generator, hub, settings: dict, **kwargs) -> "AIParticipantPool":
        return cls(
            store,
            generator,
            hub,
            reuse_cooldown=float(settings.get("ai_reuse_cooldown_seconds", AI_REUSE_COOLDOWN_SECONDS)),
            idle_eviction=float(settings.get("ai_idle_eviction_seconds", AI_IDLE_EVICTION_SECONDS)),
            response_cooldown=float(settings.get("ai_response_cooldown_seconds", AI_RESPONSE_COOLDOWN_SECONDS)),
            reply_delay_range=(
                float(settings.get("ai_reply_delay_min_seconds", AI_REPLY_DELAY_RANGE[0])),
                float(settings.get("ai_reply_delay_max_seconds", AI_REPLY_DELAY_RANGE[1])),
            ),
            context_window=int(settings.get("ai_context_window", AI_CONTEXT_WINDOW)),
            memory_size=int(settings.get("ai_memory_size", AI_MEMORY_SIZE)),
            max_response_chars=int(settings.get("ai_max_response_chars", AI_MAX_RESPONSE_CHARS)),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def enabled(self) -> bool:
        return self.generator is not None and not self._closed

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._busy

    def get_profile(self, identity_id: str) -> AIProfile | None:
        with self._lock:
            return self._profiles.get(identity_id)

    def is_synthetic(self, identity_id: str) -> bool:
        with self._lock:
            return identity_id in self._profiles

    def active_profiles(self) -> list[dict]:
        with self._lock:
            return [p.public() for p in self._profiles.values()]

    def memory_of(self, identity_id: str) -> list[str]:
        with self._lock:
            profile = self._profiles.get(identity_id)
            return list(profile.memory) if profile else []

    def recent_messages(self) -> list[dict]:
        with self._lock:
            return list(self._recent)

    def observe(self, message: dict) -> None:
        """Feed a delivered chat message into the context window."""
        entry = {
            "id": message.get("id"),
            "authorId": message.get("userId"),
            "nickname": message.get("nickname"),
            "text": message.get("text"),
            "isAI": bool(message.get("isAI")),
        }
        with self._lock:
            self._recent.append(entry)

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------
    def acquire_profile(self) -> AIProfile:
        now = self._clock()
        with self._lock:
            if self._profiles and self._rng.random() < REUSE_PROBABILITY:
                available = [p for p in self._profiles.values() if (now - p.last_used) > self.reuse_cooldown]
                if available:
                    chosen = self._rng.choice(available)
                    chosen.last_used = now
                    logging.info("Reusing ghost profile %s (%s)", chosen.nickname, chosen.personality.name)
                    return chosen
        return self._create_profile()

    def _create_profile(self) -> AIProfile:
        personality = self._rng.choice(PERSONALITIES)
        avatar_url = self._rng.choice(AI_AVATARS)

        for _ in range(NICKNAME_ATTEMPTS):
            nickname = f"anonimo#{self._rng.randint(1000, 9999)}"
            with self._lock:
                taken = any(p.nickname == nickname for p in self._profiles.values())
            if taken or self.store.nickname_exists(nickname):
                continue

            user = self.store.create_ai_user(nickname, avatar_url, personality.name)
            profile = AIProfile(
                identity_id=str(user["id"]),
                nickname=user.get("nickname") or nickname,
                avatar_url=user.get("avatarUrl") or avatar_url,
                personality=personality,
                last_used=self._clock(),
                memory=deque(maxlen=self.memory_size),
            )
            with self._lock:
                self._profiles[profile.identity_id] = profile
            logging.info("Created ghost profile %s (%s)", profile.nickname, personality.name)
            if self.hub is not None:
                self.hub.broadcast_presence()
            return profile

        raise ProfileAllocationError(f"no free ghost nickname after {NICKNAME_ATTEMPTS} attempts")

    def sweep_inactive(self) -> list[str]:
        """Evict profiles idle longer than the eviction window, memory included."""
        now = self._clock()
        with self._lock:
            evicted = [i for i, p in self._profiles.items() if (now - p.last_used) > self.idle_eviction]
            for identity_id in evicted:
                del self._profiles[identity_id]
        for identity_id in evicted:
            logging.info("Evicted idle ghost profile %s", identity_id)
        if evicted and self.hub is not None:
            self.hub.broadcast_presence()
        return evicted

    # ------------------------------------------------------------------
    # Responding
    # ------------------------------------------------------------------
    def cooldown_elapsed(self) -> bool:
        with self._lock:
            last = self._last_response
        return last is None or (self._clock() - last) >= self.response_cooldown

    def should_respond(self, recent_messages: Sequence[dict] | None = None) -> bool:
        if recent_messages is None:
            recent_messages = self.recent_messages()
        return decide_should_respond(recent_messages, self.busy, self.cooldown_elapsed(), self._rng)

    def synthesize_response(self, context: Sequence[dict] | None = None) -> SynthesizedReply | None:
        if self.generator is None:
            return None
        with self._lock:
            if self._busy or self._closed:
                return None
            self._busy = True

        try:
            messages = list(context) if context is not None else self.recent_messages()
            profile = self.acquire_profile()

            reply_to = None
            humans = [m for m in messages if not m.get("isAI")][-REPLY_TARGET_CANDIDATES:]
            if humans and self._rng.random() < REPLY_TARGET_PROBABILITY:
                reply_to = self._rng.choice(humans)

            prompt = build_prompt(
                profile.personality,
                messages[-self.context_window:],
                list(profile.memory),
                reply_to,
            )
            text = clean_response(self.generator.generate(prompt), self.max_response_chars)
            if not text:
                logging.warning("Ghost generation returned empty text; skipping this cycle")
                return None

            profile.memory.append(topic_of(text))
            with self._lock:
                self._last_response = self._clock()

            return SynthesizedReply(
                text=text,
                identity_id=profile.identity_id,
                nickname=profile.nickname,
                avatar_url=profile.avatar_url,
                reply_to_id=reply_to.get("id") if reply_to else None,
            )
        except Exception:
            logging.exception("Ghost response generation failed")
            return None
        finally:
            with self._lock:
                self._busy = False

    def offer(
        self,
        owner_id: str | None,
        on_typing: Callable[[SynthesizedReply, bool], None],
        on_reply: Callable[[SynthesizedReply], None],
    ) -> bool:
        """Maybe schedule a ghost reply to the current conversation.

        The reply is synthesized on a background task, announced as typing,
        held for a short random delay and then handed to ``on_reply``. The
        delay is cancelled by ``cancel_for_owner(owner_id)`` or ``shutdown()``.
        """
        if not self.enabled or self.hub is None:
            return False
        if not self.should_respond():
            return False
        self.hub.start_background_task(self._run_reply, owner_id, on_typing, on_reply)
        return True

    def _run_reply(self, owner_id, on_typing, on_reply) -> None:
        reply = self.synthesize_response()
        if reply is None:
            return

        pending = _PendingReply(owner_id, reply)
        with self._lock:
            if self._closed:
                return
            self._pending.append(pending)

        try:
            on_typing(reply, True)
            delay = self._rng.uniform(*self.reply_delay_range)
            cancelled = pending.cancelled.wait(delay)
        finally:
            with self._lock:
                if pending in self._pending:
                    self._pending.remove(pending)
                closed = self._closed

        if closed:
            return
        on_typing(reply, False)
        if cancelled:
            logging.info("Discarded pending ghost reply from %s", reply.nickname)
            return
        on_reply(reply)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def cancel_for_owner(self, owner_id: str) -> int:
        with self._lock:
            hits = [p for p in self._pending if p.owner_id == owner_id]
        for p in hits:
            p.cancelled.set()
        return len(hits)

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            pending = list(self._pending)
        for p in pending:
            p.cancelled.set()
