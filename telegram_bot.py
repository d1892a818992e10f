import os
import logging
from dataclasses import replace
from typing import Dict, List, Optional

from telegram import Update, BotCommand
from telegram.constants import ChatAction
from telegram.error import BadRequest
from telegram.ext import ApplicationBuilder, CommandHandler, MessageHandler, filters, ContextTypes, CallbackQueryHandler

import views
from db import SqliteBackend
from errors import PersistenceError, ProviderError, RequestInProgressError, ValidationError
from llm.provider import AnswerProvider
from models import DIFFICULTIES, MAX_QUESTIONS, QuestionType, QuizSettings
from scheduler import CountdownScheduler
from services.progress_service import DEFAULT_WEAK_TOPIC_THRESHOLD, ProgressService
from services.quiz_service import QuizSession
from services.result_store import DEFAULT_SLOT, ResultStore
from services.study_service import StudyService

logger = logging.getLogger(__name__)

MESSAGE_LIMIT = 4000
ENTITY_MARKERS = "*_`"
MAX_TIME_LIMIT_MINUTES = 60
LOADING_NOTICE = "⏳ Still working on your last request. Please wait."
SAVE_FAILED_NOTICE = "⚠️ Couldn't save your result. Please tap *Finish* again."

# Initialize Services (Globally available, wired up in create_app)
weak_topic_threshold = float(os.getenv("WEAK_TOPIC_THRESHOLD", DEFAULT_WEAK_TOPIC_THRESHOLD))
progress_service = ProgressService(weak_topic_threshold)
result_backend = None
study_service: Optional[StudyService] = None
countdown_scheduler: Optional[CountdownScheduler] = None
bot_application = None

active_sessions: Dict[int, QuizSession] = {}
result_stores: Dict[int, ResultStore] = {}


def get_result_store(chat_id: int) -> ResultStore:
    store = result_stores.get(chat_id)
    if store is None:
        store = ResultStore(result_backend, slot=f"{DEFAULT_SLOT}:{chat_id}").load()
        result_stores[chat_id] = store
    return store


def _markdown_cut_points(text: str):
    """Yields every offset at which no Markdown entity or escape is left open."""
    open_marker = None
    escaped = False
    for i, ch in enumerate(text):
        if escaped:
            escaped = False
        elif ch == "\\" and open_marker != "`":
            escaped = True
        elif open_marker is None:
            if ch in ENTITY_MARKERS:
                open_marker = ch
        elif ch == open_marker:
            open_marker = None
        if open_marker is None and not escaped:
            yield i + 1


def is_markdown_balanced(text: str) -> bool:
    return not text or len(text) in set(_markdown_cut_points(text))


def _hard_cut(line: str, limit: int) -> int:
    best = 0
    for point in _markdown_cut_points(line[:limit]):
        best = point
    # An entity longer than the limit cannot be kept whole
    return best or limit


def _message_pieces(text: str, limit: int):
    """Yields (separator, piece) pairs: paragraphs, then lines, then entity-safe cuts."""
    for paragraph in text.split("\n\n"):
        if len(paragraph) <= limit:
            yield "\n\n", paragraph
            continue
        separator = "\n\n"
        for line in paragraph.split("\n"):
            while len(line) > limit:
                cut = _hard_cut(line, limit)
                yield separator, line[:cut]
                separator, line = "", line[cut:]
            yield separator, line
            separator = "\n"


def split_message(text: str, limit: int = MESSAGE_LIMIT) -> List[str]:
    """Splits long text to stay under Telegram's message size without breaking Markdown entities."""
    chunks, current = [], ""
    for separator, piece in _message_pieces(text, limit):
        candidate = f"{current}{separator}{piece}" if current else piece
        if current and len(candidate) > limit:
            chunks.append(current)
            current = piece
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


async def reply_long(update: Update, text: str):
    for chunk in split_message(text):
        await update.effective_message.reply_text(chunk, parse_mode='Markdown', disable_web_page_preview=True)


async def safe_edit(query, text: str, reply_markup=None):
    try:
        await query.edit_message_text(text, reply_markup=reply_markup, parse_mode='Markdown')
    except BadRequest as e:
        # Re-selecting the same option produces an identical message
        if "not modified" not in str(e).lower():
            raise


def leave_current_view(chat_id: int, context: ContextTypes.DEFAULT_TYPE):
    """Any pending provider result for the previous view is dropped when it arrives."""
    context.user_data.pop('awaiting', None)
    if study_service is not None:
        study_service.change_context(chat_id)


def discard_session(chat_id: int) -> bool:
    session = active_sessions.pop(chat_id, None)
    if session is None:
        return False
    session.discard()
    return session.result is None


async def post_init(application):
    """Sets the bot commands in the menu and starts the countdown scheduler."""
    commands = [
        BotCommand("start", "Welcome & overview"),
        BotCommand("notes", "Study notes for a course topic"),
        BotCommand("quiz", "Generate and take a mock test"),
        BotCommand("stats", "Progress analytics"),
        BotCommand("cancel", "Abandon the current quiz"),
        BotCommand("help", "Get help")
    ]
    await application.bot.set_my_commands(commands)
    countdown_scheduler.start()


async def post_shutdown(application):
    for chat_id in list(active_sessions):
        discard_session(chat_id)
    countdown_scheduler.shutdown()


async def announce_timeout(chat_id: int, session: QuizSession):
    if session.result is None:
        # Store failed; the session stays open so Finish can retry the save
        await bot_application.bot.send_message(chat_id=chat_id, text=f"⏰ *Time's up!* {SAVE_FAILED_NOTICE}",
                                               parse_mode='Markdown')
        return
    if active_sessions.get(chat_id) is session:
        active_sessions.pop(chat_id)
    await bot_application.bot.send_message(chat_id=chat_id, text="⏰ *Time's up!* Your quiz was submitted.",
                                           parse_mode='Markdown')
    for chunk in split_message(views.format_results(session.result)):
        await bot_application.bot.send_message(chat_id=chat_id, text=chunk, parse_mode='Markdown')


async def start(update: Update, context: ContextTypes.DEFAULT_TYPE):
    user = update.effective_user
    leave_current_view(update.effective_chat.id, context)

    welcome_text = (
        f"🎓 *Welcome to your Study Assistant, {views.md(user.first_name)}!*\n\n"
        "📖 *What I can do:*\n"
        "1. /notes - AI study notes and a tutor explanation for any course topic.\n"
        "2. /quiz - Generate a timed mock test and take it right here.\n"
        "3. /stats - Track your scores over time and find the topics to focus on.\n\n"
        "Type /help at any time."
    )
    await update.message.reply_text(welcome_text, parse_mode='Markdown')


# ==========================================
# STUDY NOTES
# ==========================================

async def notes_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    chat_id = update.effective_chat.id
    leave_current_view(chat_id, context)

    args = " ".join(context.args or [])
    if "|" in args:
        course, topic = args.split("|", 1)
        await run_search(update, context, course, topic)
        return

    context.user_data['awaiting'] = 'notes_course'
    await update.message.reply_text(
        "📚 *Study Notes*\n\n"
        "Which *course* is this for? _(e.g. BSc Computer Science)_\n\n"
        "Tip: next time send `/notes Course | Topic` in one go.",
        parse_mode='Markdown'
    )


async def run_search(update: Update, context: ContextTypes.DEFAULT_TYPE, course: str, topic: str):
    chat_id = update.effective_chat.id
    if study_service.is_loading(chat_id):
        await update.effective_message.reply_text(LOADING_NOTICE)
        return
    try:
        await update.effective_message.reply_chat_action(action=ChatAction.TYPING)
        notes = await study_service.search_notes(chat_id, course, topic)
    except ValidationError as e:
        await update.effective_message.reply_text(f"⚠️ {e}\nUsage: `/notes Course | Topic`", parse_mode='Markdown')
        return
    except RequestInProgressError as e:
        await update.effective_message.reply_text(f"⏳ {e}")
        return
    except ProviderError:
        await update.effective_message.reply_text("❌ Failed to fetch study materials. Please try again.")
        return

    if notes is None:
        return
    await reply_long(update, views.format_notes(course.strip(), topic.strip(), notes))


# ==========================================
# QUIZ SETUP
# ==========================================

async def quiz_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    chat_id = update.effective_chat.id
    leave_current_view(chat_id, context)

    if discard_session(chat_id):
        await update.message.reply_text("🗑 Your unfinished quiz was abandoned.")

    previous = context.user_data.get('quiz_settings') or QuizSettings()
    settings = replace(previous, topic=" ".join(context.args or []).strip())
    context.user_data['quiz_settings'] = settings

    if not settings.topic:
        context.user_data['awaiting'] = 'quiz_topic'
        await update.message.reply_text(
            "📝 *Mock Test*\n\nWhat *topic* should the quiz cover? _(e.g. React Hooks)_",
            parse_mode='Markdown'
        )
        return

    await update.message.reply_text(views.format_settings(settings),
                                    reply_markup=views.settings_keyboard(settings), parse_mode='Markdown')


def apply_setting(settings: QuizSettings, action: str) -> QuizSettings:
    if action == 'count_dec':
        return replace(settings, count=max(1, settings.count - 1))
    if action == 'count_inc':
        return replace(settings, count=min(MAX_QUESTIONS, settings.count + 1))
    if action == 'time_dec':
        return replace(settings, time_limit=max(0, settings.time_limit - 60))
    if action == 'time_inc':
        return replace(settings, time_limit=min(MAX_TIME_LIMIT_MINUTES * 60, settings.time_limit + 60))
    if action.startswith('diff_') and action[5:] in DIFFICULTIES:
        return replace(settings, difficulty=action[5:])
    if action.startswith('type_') and action[5:] in views.TYPE_CODES:
        qtype = views.TYPE_CODES[action[5:]]
        return replace(settings, types=settings.types ^ {qtype})
    return settings


async def settings_callback(update: Update, context: ContextTypes.DEFAULT_TYPE):
    query = update.callback_query
    action = query.data[len('set_'):]
    settings = context.user_data.get('quiz_settings')

    if settings is None:
        await query.answer("This setup has expired. Use /quiz to start again.", show_alert=True)
        return

    if action != 'generate':
        await query.answer()
        settings = apply_setting(settings, action)
        context.user_data['quiz_settings'] = settings
        await safe_edit(query, views.format_settings(settings), views.settings_keyboard(settings))
        return

    try:
        settings = settings.validate()
    except ValidationError as e:
        await query.answer(str(e), show_alert=True)
        return

    if study_service.is_loading(update.effective_chat.id):
        await query.answer(LOADING_NOTICE, show_alert=True)
        return

    await query.answer()
    await generate_and_start(update, context, settings)


async def generate_and_start(update: Update, context: ContextTypes.DEFAULT_TYPE, settings: QuizSettings):
    chat_id = update.effective_chat.id
    message = update.effective_message
    try:
        await message.reply_chat_action(action=ChatAction.TYPING)
        questions = await study_service.generate_quiz(chat_id, settings)
    except RequestInProgressError as e:
        await message.reply_text(f"⏳ {e}")
        return
    except ProviderError:
        await message.reply_text("❌ Failed to generate the quiz. Please try again.")
        return

    if questions is None:
        return

    discard_session(chat_id)
    session = QuizSession(settings.topic, questions, get_result_store(chat_id), time_limit=settings.time_limit)
    active_sessions[chat_id] = session
    countdown_scheduler.start_countdown(chat_id, session)
    logger.info("Chat %s started a %d-question quiz on '%s'", chat_id, len(questions), settings.topic)

    await message.reply_text(views.format_question(session), reply_markup=views.question_keyboard(session),
                             parse_mode='Markdown')


# ==========================================
# TAKING A QUIZ
# ==========================================

async def finish_session(update: Update, session: QuizSession) -> bool:
    """Stores the result and shows it. Returns False when the store failed and the quiz is still open."""
    chat_id = update.effective_chat.id
    try:
        result = session.finish()
    except PersistenceError as e:
        logger.error(f"Failed to store quiz result for chat {chat_id}: {e}", exc_info=True)
        await update.effective_message.reply_text(SAVE_FAILED_NOTICE, parse_mode='Markdown')
        return False
    if active_sessions.get(chat_id) is session:
        active_sessions.pop(chat_id)
    if result is not None:
        await reply_long(update, views.format_results(result))
    return True


async def quiz_callback(update: Update, context: ContextTypes.DEFAULT_TYPE):
    query = update.callback_query
    chat_id = update.effective_chat.id
    session = active_sessions.get(chat_id)

    if session is None or not session.is_active:
        await query.answer("This quiz is no longer active. Use /quiz to start a new one.", show_alert=True)
        return
    await query.answer()

    action = query.data[len('quiz_'):]
    if action.startswith('ans_'):
        choices = views.answer_choices(session)
        index = int(action[4:])
        if 0 <= index < len(choices):
            session.record_answer(choices[index])
    elif action == 'prev':
        session.retreat()
    elif action == 'next':
        session.advance()
    elif action == 'finish':
        if await finish_session(update, session):
            await query.edit_message_reply_markup(reply_markup=None)
        return

    if session.is_active:
        await safe_edit(query, views.format_question(session), views.question_keyboard(session))


async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE):
    chat_id = update.effective_chat.id
    user_text = update.message.text
    awaiting = context.user_data.get('awaiting')

    # Guided form input
    if awaiting == 'notes_course':
        context.user_data['notes_course'] = user_text.strip()
        context.user_data['awaiting'] = 'notes_topic'
        await update.message.reply_text("👌 And which *topic*? _(e.g. Data Structures)_", parse_mode='Markdown')
        return

    if awaiting == 'notes_topic':
        context.user_data.pop('awaiting', None)
        await run_search(update, context, context.user_data.pop('notes_course', ''), user_text)
        return

    if awaiting == 'quiz_topic':
        topic = user_text.strip()
        if not topic:
            await update.message.reply_text("⚠️ Please enter a topic.")
            return
        context.user_data.pop('awaiting', None)
        settings = replace(context.user_data.get('quiz_settings') or QuizSettings(), topic=topic)
        context.user_data['quiz_settings'] = settings
        await update.message.reply_text(views.format_settings(settings),
                                        reply_markup=views.settings_keyboard(settings), parse_mode='Markdown')
        return

    # Free-text answer to the current question
    session = active_sessions.get(chat_id)
    if session is not None and session.is_active:
        session.record_answer(user_text)
        if session.current_question.type != QuestionType.SHORT_ANSWER:
            await update.message.reply_text("ℹ️ Saved as typed. Tap a button to pick one of the choices instead.")
        await update.message.reply_text(views.format_question(session),
                                        reply_markup=views.question_keyboard(session), parse_mode='Markdown')
        return

    await update.message.reply_text("Use /notes to study a topic or /quiz to test yourself. /help lists everything.")


# ==========================================
# ANALYTICS & MISC
# ==========================================

async def stats_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    chat_id = update.effective_chat.id
    leave_current_view(chat_id, context)

    summary = progress_service.get_summary(get_result_store(chat_id).all())
    await reply_long(update, views.format_analytics(summary, progress_service.weak_topic_threshold))


async def cancel_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    chat_id = update.effective_chat.id
    leave_current_view(chat_id, context)

    if discard_session(chat_id):
        await update.message.reply_text("🗑 Quiz abandoned. Nothing was recorded.")
    else:
        await update.message.reply_text("Nothing to cancel.")


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    text = (
        "/notes - Study notes (`/notes Course | Topic`)\n"
        "/quiz - Generate a mock test (`/quiz Topic`)\n"
        "/stats - View your progress\n"
        "/cancel - Abandon the current quiz\n"
        "/start - Show the welcome message"
    )
    await update.message.reply_text(text, parse_mode='Markdown')


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE):
    logger.error("Unhandled error while processing an update", exc_info=context.error)


def create_app():
    global result_backend, study_service, countdown_scheduler, bot_application
    token = os.getenv("TELEGRAM_BOT_TOKEN")
    if not token:
        raise ValueError("TELEGRAM_BOT_TOKEN not found in environment variables.")

    # Initialize the provider here after env vars are loaded
    result_backend = SqliteBackend()
    study_service = StudyService(AnswerProvider())
    countdown_scheduler = CountdownScheduler(on_timeout=announce_timeout)

    app = ApplicationBuilder().token(token).post_init(post_init).post_shutdown(post_shutdown).build()
    bot_application = app

    app.add_handler(CommandHandler("start", start))
    app.add_handler(CommandHandler("notes", notes_command))
    app.add_handler(CommandHandler("quiz", quiz_command))
    app.add_handler(CommandHandler("stats", stats_command))
    app.add_handler(CommandHandler("cancel", cancel_command))
    app.add_handler(CommandHandler("help", help_command))

    app.add_handler(CallbackQueryHandler(settings_callback, pattern='^set_'))
    app.add_handler(CallbackQueryHandler(quiz_callback, pattern='^quiz_'))

    app.add_handler(MessageHandler(filters.TEXT & (~filters.COMMAND), handle_message))
    app.add_error_handler(error_handler)

    return app
