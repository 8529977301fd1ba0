"""Question authoring and its durable form.

Questions live in the ``questions`` collection as one document per id, with a
``position`` field for play order. Removal writes a tombstone instead of
deleting, so only ``put``/``get``/``list`` are needed from the store.
"""
from __future__ import annotations

import uuid
from typing import Any, Dict, Iterable, List, Optional

from .db import DocumentStore
from .errors import InvalidQuestion
from .models import Question
from .utils import normalize_answer

QUESTIONS = "questions"
RESULTS = "results"


def build_question(
    text: str,
    accepted_answers: Iterable[str],
    image_ref: Optional[str] = None,
    points: Optional[int] = None,
    *,
    question_id: Optional[str] = None,
    default_points: int = 10,
) -> Question:
    text = (text or "").strip()
    if not text:
        raise InvalidQuestion("Question text is required")

    answers = sorted({normalize_answer(a) for a in accepted_answers if normalize_answer(a)})
    if not answers:
        raise InvalidQuestion("At least one accepted answer is required")

    if points is None:
        points = default_points
    if points <= 0:
        raise InvalidQuestion("Points must be a positive integer")

    return Question(
        id=question_id or uuid.uuid4().hex,
        text=text,
        accepted_answers=tuple(answers),
        image_ref=image_ref or None,
        points=points,
    )


def question_to_document(question: Question, position: int) -> Dict[str, Any]:
    return {
        "text": question.text,
        "accepted_answers": list(question.accepted_answers),
        "image_ref": question.image_ref,
        "points": question.points,
        "position": position,
        "deleted": False,
    }


def question_from_document(doc: Dict[str, Any]) -> Question:
    return Question(
        id=str(doc["_id"]),
        text=doc["text"],
        accepted_answers=tuple(doc.get("accepted_answers", ())),
        image_ref=doc.get("image_ref"),
        points=int(doc.get("points", 10)),
    )


async def load_questions(store: DocumentStore) -> List[Question]:
    docs = [d for d in await store.list(QUESTIONS) if not d.get("deleted")]
    docs.sort(key=lambda d: (d.get("position", 0), str(d["_id"])))
    return [question_from_document(d) for d in docs]


async def save_questions(store: DocumentStore, questions: Iterable[Question]) -> None:
    for position, question in enumerate(questions):
        await store.put(QUESTIONS, question.id, question_to_document(question, position))


async def delete_question(store: DocumentStore, question_id: str) -> None:
    await store.put(QUESTIONS, question_id, {"deleted": True})
