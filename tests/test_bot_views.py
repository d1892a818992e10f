from datetime import datetime
from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import AsyncMock, MagicMock

import telegram_bot
import views
from errors import PersistenceError
from models import GradedAnswer, QuestionType, QuizQuestion, QuizResult, QuizSettings, Source, StudyNotes
from scheduler import CountdownScheduler
from services.progress_service import ProgressService
from services.quiz_service import QuizSession
from services.result_store import MemoryBackend, ResultStore


def make_session(time_limit=0):
    questions = [
        QuizQuestion(id=0, question="Largest planet?", type=QuestionType.MCQ, answer="Jupiter", explanation="",
                     options=("Mars", "Jupiter", "Venus", "Earth")),
        QuizQuestion(id=1, question="Pluto is a planet.", type=QuestionType.TRUE_FALSE, answer="False",
                     explanation="Reclassified in 2006."),
        QuizQuestion(id=2, question="Closest star?", type=QuestionType.SHORT_ANSWER, answer="Sun", explanation=""),
    ]
    return QuizSession("Astronomy", questions, ResultStore(MemoryBackend()), time_limit=time_limit)


def callback_data(markup):
    return [button.callback_data for row in markup.inline_keyboard for button in row]


class FailingBackend(MemoryBackend):
    def write(self, slot, payload):
        raise PersistenceError("disk full")


class NotesViewTestCase(TestCase):
    def test_split_sections(self):
        text = "Tutor Explanation: Trees are graphs.\n\nStudy Notes\n* A root\n- Leaves\n\n"
        sections = views.split_sections(text)
        self.assertEqual([s["title"] for s in sections], ["Tutor Explanation", "Study Notes"])
        self.assertEqual(sections[1]["lines"], ["A root", "Leaves"])

    def test_untitled_text_gets_a_section_heading(self):
        sections = views.split_sections("Just some text")
        self.assertEqual(sections[0]["title"], "Section 1")

    def test_format_notes_lists_sources(self):
        notes = StudyNotes(text="Study Notes\n* Binary trees", sources=(Source("Wiki", "https://example.org"),))
        text = views.format_notes("CS", "Trees", notes)
        self.assertIn("• Binary trees", text)
        self.assertIn("[Wiki](https://example.org)", text)


class QuizViewTestCase(TestCase):
    def test_first_question_has_options_and_next(self):
        session = make_session()
        data = callback_data(views.question_keyboard(session))
        self.assertEqual(data, ["quiz_ans_0", "quiz_ans_1", "quiz_ans_2", "quiz_ans_3", "quiz_next"])

    def test_last_question_offers_finish(self):
        session = make_session()
        session.advance()
        session.advance()
        data = callback_data(views.question_keyboard(session))
        self.assertEqual(data, ["quiz_prev", "quiz_finish"])
        self.assertIn("Reply with your answer", views.format_question(session))

    def test_true_false_choices(self):
        session = make_session()
        session.advance()
        self.assertEqual(views.answer_choices(session), ["True", "False"])

    def test_question_shows_timer_and_answer(self):
        session = make_session(time_limit=120)
        session.record_answer("Jupiter")
        text = views.format_question(session)
        self.assertIn("02:00", text)
        self.assertIn("Question 1 of 3", text)
        self.assertIn("Your answer:* Jupiter", text)

    def test_format_results(self):
        session = make_session()
        session.record_answer("jupiter")
        result = session.finish()

        text = views.format_results(result)

        self.assertIn("33% (1/3)", text)
        self.assertIn("Correct answer: False", text)
        self.assertIn("_No answer_", text)
        self.assertIn(f"Completed on {result.date.strftime('%Y-%m-%d %H:%M')}", text)


class SettingsTestCase(TestCase):
    def test_apply_setting(self):
        settings = QuizSettings(topic="Stars")
        settings = telegram_bot.apply_setting(settings, "count_inc")
        settings = telegram_bot.apply_setting(settings, "time_dec")
        settings = telegram_bot.apply_setting(settings, "diff_Hard")
        settings = telegram_bot.apply_setting(settings, "type_tf")
        settings = telegram_bot.apply_setting(settings, "type_mcq")

        self.assertEqual(settings.count, 6)
        self.assertEqual(settings.time_limit, 540)
        self.assertEqual(settings.difficulty, "Hard")
        self.assertEqual(settings.types, frozenset({QuestionType.TRUE_FALSE}))

    def test_apply_setting_bounds(self):
        settings = QuizSettings(topic="Stars", count=1, time_limit=0)
        settings = telegram_bot.apply_setting(settings, "count_dec")
        settings = telegram_bot.apply_setting(settings, "time_dec")
        settings = telegram_bot.apply_setting(settings, "diff_Unknown")
        self.assertEqual((settings.count, settings.time_limit, settings.difficulty), (1, 0, "Medium"))

    def test_settings_keyboard_marks_selected_types(self):
        markup = views.settings_keyboard(QuizSettings(topic="Stars"))
        labels = [button.text for row in markup.inline_keyboard for button in row]
        self.assertIn("✅ Multiple Choice", labels)
        self.assertIn("⬜ True/False", labels)
        self.assertIn("set_generate", callback_data(markup))


class AnalyticsViewTestCase(TestCase):
    def test_empty_history(self):
        summary = ProgressService().get_summary([])
        self.assertIn("No quiz data available yet", views.format_analytics(summary, 60))

    def test_weak_topics_listed(self):
        question = QuizQuestion(id=0, question="q", type=QuestionType.SHORT_ANSWER, answer="a", explanation="")
        results = [
            QuizResult(topic="Optics", score=0, total_questions=1, time_taken=30, date=datetime(2024, 1, 1),
                       answers=(GradedAnswer(question, "", False),)),
            QuizResult(topic="Waves", score=1, total_questions=1, time_taken=90, date=datetime(2024, 1, 2),
                       answers=(GradedAnswer(question, "a", True),)),
        ]

        text = views.format_analytics(ProgressService().get_summary(results), 60)

        self.assertIn("50.0%", text)
        self.assertIn("1m 0s", text)
        self.assertIn("Topics to Focus On", text)
        self.assertIn("Optics: 0.0% avg.", text)
        self.assertNotIn("Waves: ", text)


class SplitMessageTestCase(TestCase):
    def test_short_text_is_one_chunk(self):
        self.assertEqual(telegram_bot.split_message("hello"), ["hello"])

    def test_long_text_splits_on_paragraphs(self):
        text = "\n\n".join(["a" * 30] * 5)
        chunks = telegram_bot.split_message(text, limit=70)
        self.assertTrue(all(len(c) <= 70 for c in chunks))
        self.assertEqual("\n\n".join(chunks), text)

    def test_oversized_paragraph_is_cut(self):
        chunks = telegram_bot.split_message("b" * 150, limit=60)
        self.assertEqual([len(c) for c in chunks], [60, 60, 30])

    def test_oversized_paragraph_splits_on_lines(self):
        lines = [f"line {i} " + "c" * 20 for i in range(6)]
        chunks = telegram_bot.split_message("\n".join(lines), limit=60)
        self.assertEqual(chunks, ["\n".join(lines[0:2]), "\n".join(lines[2:4]), "\n".join(lines[4:6])])

    def test_cut_never_lands_inside_an_entity(self):
        line = "x" * 50 + "*" + "y" * 30 + "*"
        self.assertEqual(telegram_bot.split_message(line, limit=60), ["x" * 50, "*" + "y" * 30 + "*"])

    def test_cut_never_separates_an_escape(self):
        line = "a" * 59 + "\\_b"
        self.assertEqual(telegram_bot.split_message(line, limit=60), ["a" * 59, "\\_b"])

    def test_is_markdown_balanced(self):
        self.assertTrue(telegram_bot.is_markdown_balanced("*bold* and snake\\_case `a_b`"))
        self.assertFalse(telegram_bot.is_markdown_balanced("*open"))
        self.assertFalse(telegram_bot.is_markdown_balanced("trailing \\"))

    def test_long_results_split_into_balanced_chunks(self):
        answers = []
        for i in range(20):
            question = QuizQuestion(
                id=i, question=f"What does *args do in my_func_{i}? " + "Explain carefully. " * 5,
                type=QuestionType.SHORT_ANSWER, answer=f"collects positional_args_{i}",
                explanation="A *starred* parameter packs extra_positional arguments into a tuple. " * 3)
            answers.append(GradedAnswer(question=question, user_answer=f"kwargs_{i}" if i % 2 else "", is_correct=False))
        result = QuizResult(topic="Python *args", score=0, total_questions=20, time_taken=900,
                            date=datetime(2024, 4, 2, 10, 30), answers=tuple(answers))

        text = views.format_results(result)
        chunks = telegram_bot.split_message(text)

        self.assertGreater(len(text), telegram_bot.MESSAGE_LIMIT)
        self.assertGreater(len(chunks), 1)
        for chunk in chunks:
            self.assertLessEqual(len(chunk), telegram_bot.MESSAGE_LIMIT)
            self.assertTrue(telegram_bot.is_markdown_balanced(chunk), chunk[-200:])
        self.assertEqual("".join(chunks).replace("\n", ""), text.replace("\n", ""))


class FakeJob:
    def __init__(self):
        self.removed = 0

    def remove(self):
        self.removed += 1


class FakeScheduler:
    running = False

    def __init__(self):
        self.jobs = {}

    def add_job(self, func, trigger, id=None, **kwargs):
        self.jobs[id] = func
        return FakeJob()


class CountdownSchedulerTestCase(IsolatedAsyncioTestCase):
    async def test_timeout_is_reported_once(self):
        reported = []

        async def on_timeout(chat_id, session):
            reported.append((chat_id, session.result.total_questions))

        fake = FakeScheduler()
        countdown = CountdownScheduler(on_timeout=on_timeout, scheduler=fake)
        session = make_session(time_limit=2)

        countdown.start_countdown(42, session)
        tick = fake.jobs["countdown:42"]
        await tick()
        self.assertEqual(reported, [])
        await tick()
        await tick()

        self.assertEqual(reported, [(42, 3)])
        self.assertEqual(len(session.result_store.all()), 1)

    async def test_failed_store_on_timeout_is_logged_and_reported(self):
        reported = []

        async def on_timeout(chat_id, session):
            reported.append((chat_id, session.result))

        fake = FakeScheduler()
        session = make_session(time_limit=1)
        session.result_store = ResultStore(FailingBackend())
        CountdownScheduler(on_timeout=on_timeout, scheduler=fake).start_countdown(9, session)

        with self.assertLogs("scheduler", level="ERROR") as logs:
            await fake.jobs["countdown:9"]()

        self.assertIn("disk full", logs.output[0])
        self.assertEqual(reported, [(9, None)])
        self.assertTrue(session.is_active)

    async def test_untimed_session_gets_no_job(self):
        fake = FakeScheduler()
        CountdownScheduler(scheduler=fake).start_countdown(7, make_session(time_limit=0))
        self.assertEqual(fake.jobs, {})


class LoadingStudyService:
    def is_loading(self, chat_id):
        return True


def make_update(chat_id=5, data=None):
    update = MagicMock()
    update.effective_chat.id = chat_id
    update.effective_message.reply_text = AsyncMock()
    update.callback_query.data = data
    update.callback_query.answer = AsyncMock()
    update.callback_query.edit_message_reply_markup = AsyncMock()
    return update


class HandlerTestCase(IsolatedAsyncioTestCase):
    def setUp(self):
        self.study_service = telegram_bot.study_service
        self.bot_application = telegram_bot.bot_application
        self.active_sessions = dict(telegram_bot.active_sessions)

    def tearDown(self):
        telegram_bot.study_service = self.study_service
        telegram_bot.bot_application = self.bot_application
        telegram_bot.active_sessions.clear()
        telegram_bot.active_sessions.update(self.active_sessions)

    async def test_generate_is_refused_while_loading(self):
        telegram_bot.study_service = LoadingStudyService()
        update = make_update(data="set_generate")
        context = MagicMock()
        context.user_data = {"quiz_settings": QuizSettings(topic="Trees")}

        await telegram_bot.settings_callback(update, context)

        update.callback_query.answer.assert_awaited_once_with(telegram_bot.LOADING_NOTICE, show_alert=True)

    async def test_search_is_refused_while_loading(self):
        telegram_bot.study_service = LoadingStudyService()
        update = make_update()

        await telegram_bot.run_search(update, MagicMock(), "CS", "Trees")

        update.effective_message.reply_text.assert_awaited_once_with(telegram_bot.LOADING_NOTICE)

    async def test_failed_save_keeps_quiz_open(self):
        session = make_session()
        session.result_store = ResultStore(FailingBackend())
        telegram_bot.active_sessions[5] = session
        update = make_update(data="quiz_finish")

        with self.assertLogs("telegram_bot", level="ERROR"):
            await telegram_bot.quiz_callback(update, MagicMock())

        update.effective_message.reply_text.assert_awaited_once_with(telegram_bot.SAVE_FAILED_NOTICE,
                                                                     parse_mode='Markdown')
        update.callback_query.edit_message_reply_markup.assert_not_awaited()
        self.assertIs(telegram_bot.active_sessions[5], session)
        self.assertTrue(session.is_active)

    async def test_timeout_without_stored_result_keeps_quiz_open(self):
        telegram_bot.bot_application = MagicMock()
        telegram_bot.bot_application.bot.send_message = AsyncMock()
        session = make_session(time_limit=1)
        telegram_bot.active_sessions[5] = session

        await telegram_bot.announce_timeout(5, session)

        telegram_bot.bot_application.bot.send_message.assert_awaited_once()
        self.assertIn("Finish", telegram_bot.bot_application.bot.send_message.await_args.kwargs["text"])
        self.assertIs(telegram_bot.active_sessions[5], session)
