from __future__ import annotations

from dataclasses import dataclass


MUSIC_WORDS = (
    "song", "music", "listen", "heard", "hearing", "played", "playlist", "spotify",
    "track", "artist", "album", "musics",
)
OCR_WORDS = (
    "screen", "ocr", "read", "saw", "see", "text", "chat", "message", "whatsapp",
    "telegram", "discord", "slack", "said", "wrote", "typed", "mention",
)
FILE_WORDS = (
    "file", "code", "coding", "project", "repo", "commit", "edit", "modified",
    "created", "deleted", "function", "bug", "wrote code", "program",
)
TIMELINE_WORDS = (
    "what did i do", "timeline", "events", "recent activity", "when did i",
    "what was i doing", "what have i", "sequence", "after", "before",
)
SUMMARY_WORDS = (
    "summary", "summarize", "summarise", "overview", "recap", "review", "overall",
    "whole", "entire", "productiv", "how much time", "top apps", "most used", "wrapped",
)
IDENTITY_WORDS = (
    "who is", "who's", "who was", "who did i", "crush", "girlfriend", "boyfriend",
    "partner", "best friend", "relationship", "talk to", "talking to", "texted",
    "texting", "chatted with", "chatting with", "dating",
)
PROJECT_WORDS = (
    "project", "codebase", "repo", "repository", "coding", "code", "commit",
    "which file", "what file", "working on",
)
MULTI_WORDS = (
    "what did i", "what was the name", "name of", "what's the name", "confirm",
    "did i ever", "which one", "remind me",
)
SMALL_TALK = (
    "hi", "hello", "hey", "thanks", "thank you", "ok", "okay", "cool", "good morning",
    "good night", "how are you", "who are you", "what can you do", "bye",
)

GREETINGS = ("hi", "hello", "hey", "thanks")

CHAT_APPS = (
    "whatsapp", "telegram", "discord", "slack", "messenger", "signal", "teams",
    "instagram", "imessage", "messages", "wechat", "skype",
)


@dataclass(frozen=True)
class QueryIntent:
    wants_music: bool = False
    wants_ocr: bool = False
    wants_files: bool = False
    wants_timeline: bool = False
    broad_summary: bool = False
    query_kind: str = "general"  # identity | project | multi_faceted | general
    small_talk: bool = False

    def hints(self) -> list:
        flags = []
        if self.wants_music:
            flags.append("music")
        if self.wants_ocr:
            flags.append("screen text / chats")
        if self.wants_files:
            flags.append("file changes")
        if self.wants_timeline:
            flags.append("timeline")
        if self.broad_summary:
            flags.append("broad summary")
        return flags


def _has(q: str, words: tuple) -> bool:
    return any(w in q for w in words)


def is_small_talk(query: str) -> bool:
    q = (query or "").strip().lower().rstrip("!?.")
    if not q:
        return True
    words = q.split()
    return q in SMALL_TALK or (len(words) <= 3 and words[0].strip(",") in GREETINGS)


def classify_intent(query: str) -> QueryIntent:
    """Keyword heuristics over the question; advisory only."""
    q = (query or "").lower()
    if _has(q, IDENTITY_WORDS):
        kind = "identity"
    elif _has(q, PROJECT_WORDS):
        kind = "project"
    elif _has(q, MULTI_WORDS):
        kind = "multi_faceted"
    else:
        kind = "general"
    return QueryIntent(
        wants_music=_has(q, MUSIC_WORDS),
        wants_ocr=_has(q, OCR_WORDS) or _has(q, CHAT_APPS) or kind == "identity",
        wants_files=_has(q, FILE_WORDS),
        wants_timeline=_has(q, TIMELINE_WORDS),
        broad_summary=_has(q, SUMMARY_WORDS),
        query_kind=kind,
        small_talk=is_small_talk(query),
    )
