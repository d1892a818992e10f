"""
Message text and inline keyboards for the chat views: study notes, quiz
setup, quiz question, quiz results and progress analytics.
"""

import re
from typing import Any, Dict, List

from telegram import InlineKeyboardButton, InlineKeyboardMarkup
from telegram.helpers import escape_markdown

from models import DIFFICULTIES, MAX_QUESTIONS, QuestionType, QuizResult, QuizSettings, StudyNotes
from services.progress_service import format_duration, round_half_up, score_band
from services.quiz_service import QuizSession

TYPE_CODES = {
    "mcq": QuestionType.MCQ,
    "short": QuestionType.SHORT_ANSWER,
    "tf": QuestionType.TRUE_FALSE,
}
BAND_MARKS = {"good": "🟢", "fair": "🟡", "poor": "🔴"}
SECTION_TITLES = re.compile(r"(?=Tutor Explanation|Study Notes)", re.IGNORECASE)
SECTION_HEADING = re.compile(r"^(Tutor Explanation|Study Notes)[:\s]*", re.IGNORECASE)
BAR_WIDTH = 10


def md(text: Any) -> str:
    return escape_markdown(str(text), version=1)


# Study notes

def split_sections(text: str) -> List[Dict[str, Any]]:
    """Splits provider text into titled sections with one entry per non-blank line."""
    sections = []
    for index, chunk in enumerate(SECTION_TITLES.split(text)):
        if not chunk.strip():
            continue
        match = SECTION_HEADING.match(chunk)
        title = match.group(1).title() if match else f"Section {index + 1}"
        body = chunk[match.end():] if match else chunk
        lines = [re.sub(r"^[*\-•]\s+", "", line).strip() for line in body.splitlines()]
        sections.append({"title": title, "lines": [line for line in lines if line]})
    return sections


def format_notes(course: str, topic: str, notes: StudyNotes) -> str:
    parts = [f"📚 *{md(topic)}* ({md(course)})"]
    for section in split_sections(notes.text):
        body = "\n".join(
            line if re.match(r"^(\d+\.|[a-z]\.)", line) else f"• {line}"
            for line in (md(raw) for raw in section["lines"])
        )
        parts.append(f"*{md(section['title'])}*\n{body}")

    if notes.sources:
        links = "\n".join(f"{i}. [{md(s.title)}]({s.uri})" for i, s in enumerate(notes.sources, start=1))
        parts.append(f"🔗 *Sources*\n{links}")
    else:
        parts.append("🔗 _No sources were provided._")
    return "\n\n".join(parts)


# Quiz setup

def format_settings(settings: QuizSettings) -> str:
    types = ", ".join(t.value for t in QuestionType if t in settings.types) or "none selected"
    limit = f"{settings.time_limit // 60} min" if settings.time_limit else "no limit"
    return (
        f"📝 *Mock Test Setup*\n\n"
        f"📖 *Topic:* {md(settings.topic)}\n"
        f"🔢 *Questions:* {settings.count}\n"
        f"🎚 *Difficulty:* {settings.difficulty}\n"
        f"🧩 *Types:* {types}\n"
        f"⏱ *Time limit:* {limit}\n\n"
        f"Adjust the settings below, then tap *Generate*."
    )


def settings_keyboard(settings: QuizSettings) -> InlineKeyboardMarkup:
    type_buttons = []
    for code, qtype in TYPE_CODES.items():
        mark = "✅" if qtype in settings.types else "⬜"
        type_buttons.append(InlineKeyboardButton(f"{mark} {qtype.value}", callback_data=f"set_type_{code}"))

    difficulty_buttons = [
        InlineKeyboardButton(f"• {d} •" if d == settings.difficulty else d, callback_data=f"set_diff_{d}")
        for d in DIFFICULTIES
    ]

    keyboard = [
        [
            InlineKeyboardButton("➖", callback_data="set_count_dec"),
            InlineKeyboardButton(f"{settings.count} / {MAX_QUESTIONS} questions", callback_data="set_noop"),
            InlineKeyboardButton("➕", callback_data="set_count_inc"),
        ],
        difficulty_buttons,
        type_buttons[:2],
        type_buttons[2:],
        [
            InlineKeyboardButton("➖", callback_data="set_time_dec"),
            InlineKeyboardButton(
                f"⏱ {settings.time_limit // 60} min" if settings.time_limit else "⏱ No limit",
                callback_data="set_noop",
            ),
            InlineKeyboardButton("➕", callback_data="set_time_inc"),
        ],
        [InlineKeyboardButton("Generate Quiz 🚀", callback_data="set_generate")],
    ]
    return InlineKeyboardMarkup(keyboard)


# Quiz

def answer_choices(session: QuizSession) -> List[str]:
    question = session.current_question
    if question.type == QuestionType.MCQ:
        return list(question.options or ())
    if question.type == QuestionType.TRUE_FALSE:
        return ["True", "False"]
    return []


def format_question(session: QuizSession) -> str:
    question = session.current_question
    total = len(session.questions)
    position = session.current_index + 1
    filled = round_half_up(position / total * BAR_WIDTH)
    header = f"🧠 *Quiz: {md(session.topic)}*"
    if session.has_time_limit:
        header += f"   ⏱ `{session.format_time_remaining()}`"

    text = (
        f"{header}\n"
        f"{'▰' * filled}{'▱' * (BAR_WIDTH - filled)}\n\n"
        f"_Question {position} of {total}_ · {question.type.value}\n\n"
        f"{md(question.question)}\n"
    )

    if question.type == QuestionType.MCQ:
        letters = "ABCD"
        text += "\n" + "\n".join(f"*{letters[i]}.* {md(o)}" for i, o in enumerate(question.options or ()))
        text += "\n"

    current = session.current_answer()
    if current:
        text += f"\n✏️ *Your answer:* {md(current)}"
    elif question.type == QuestionType.SHORT_ANSWER:
        text += "\n👇 _Reply with your answer._"
    return text


def question_keyboard(session: QuizSession) -> InlineKeyboardMarkup:
    current = session.current_answer()
    keyboard = []
    choices = answer_choices(session)
    if session.current_question.type == QuestionType.MCQ:
        letters = "ABCD"
        row = [
            InlineKeyboardButton(f"{'✅ ' if current == choice else ''}{letters[i]}", callback_data=f"quiz_ans_{i}")
            for i, choice in enumerate(choices)
        ]
        keyboard.append(row)
    elif choices:
        keyboard.append([
            InlineKeyboardButton(f"{'✅ ' if current == choice else ''}{choice}", callback_data=f"quiz_ans_{i}")
            for i, choice in enumerate(choices)
        ])

    nav = []
    if session.current_index > 0:
        nav.append(InlineKeyboardButton("⬅️ Previous", callback_data="quiz_prev"))
    if session.is_last_question:
        nav.append(InlineKeyboardButton("Finish Quiz 🏁", callback_data="quiz_finish"))
    else:
        nav.append(InlineKeyboardButton("Next ➡️", callback_data="quiz_next"))
    keyboard.append(nav)
    return InlineKeyboardMarkup(keyboard)


# Results

def format_results(result: QuizResult) -> str:
    percent = round_half_up(result.score_percent)
    lines = [
        f"🏁 *Quiz Complete: {md(result.topic)}*",
        f"📅 Completed on {result.date.strftime('%Y-%m-%d %H:%M')}\n",
        f"{BAND_MARKS[score_band(percent)]} *Score:* {percent}% ({result.score}/{result.total_questions})",
        f"⏱ *Time taken:* {format_duration(result.time_taken)}",
        "──────────────────",
    ]
    for index, graded in enumerate(result.answers, start=1):
        mark = "✅" if graded.is_correct else "❌"
        given = md(graded.user_answer) if graded.user_answer else "_No answer_"
        lines.append(f"{mark} *{index}.* {md(graded.question.question)}")
        lines.append(f"   Your answer: {given}")
        if not graded.is_correct:
            lines.append(f"   Correct answer: {md(graded.question.answer)}")
        if graded.question.explanation:
            lines.append(f"   💡 {md(graded.question.explanation)}")
    lines.append("\nUse /quiz to take another quiz.")
    return "\n".join(lines)


# Analytics

def score_bar(percent: int) -> str:
    filled = round_half_up(max(0, min(100, percent)) / 100 * BAR_WIDTH)
    return "█" * filled + "░" * (BAR_WIDTH - filled)


def format_analytics(summary: Dict[str, Any], threshold: float) -> str:
    if not summary["total_quizzes"]:
        return (
            "📊 *Progress Analytics*\n\n"
            "No quiz data available yet. Complete a mock test with /quiz to see your progress!"
        )

    lines = [
        "📊 *Progress Analytics*\n",
        f"🎯 *Average Score:* {summary['average_score']:.1f}%",
        f"⏱ *Average Time/Quiz:* {format_duration(summary['average_time'])}",
        f"📝 *Total Quizzes Taken:* {summary['total_quizzes']}",
        "──────────────────",
        "📈 *Score Over Time*",
    ]
    for point in summary["timeline"]:
        lines.append(f"`{point.date.strftime('%Y-%m-%d')} {score_bar(point.score_percent)} {point.score_percent:>3}%`")

    lines.append("\n📚 *Performance by Topic*")
    for topic in summary["topics"]:
        lines.append(f"`{score_bar(topic.average_score)} {topic.average_score:>3}%` {md(topic.topic)}")

    if summary["weak_topics"]:
        lines.append(f"\n⚠️ *Topics to Focus On* (below {threshold:g}%)")
        for topic in summary["weak_topics"]:
            lines.append(f"• {md(topic.topic)}: {topic.average_score:.1f}% avg.")
    return "\n".join(lines)
