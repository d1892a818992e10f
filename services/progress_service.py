import math
from typing import Any, Dict, List, Optional, Sequence

from models import QuizResult, TimelinePoint, TopicAverage

DEFAULT_WEAK_TOPIC_THRESHOLD = 60


def round_half_up(value: float) -> int:
    # round() would send 62.5 to 62; scores shown to users round .5 upwards
    return int(math.floor(value + 0.5))


def average_score_percent(results: Sequence[QuizResult]) -> Optional[float]:
    """Mean score percentage, or None when there is nothing to average."""
    if not results:
        return None
    return sum(r.score / r.total_questions for r in results) / len(results) * 100


def average_time_seconds(results: Sequence[QuizResult]) -> Optional[float]:
    if not results:
        return None
    return sum(r.time_taken for r in results) / len(results)


def score_timeline(results: Sequence[QuizResult]) -> List[TimelinePoint]:
    return [TimelinePoint(date=r.date, score_percent=round_half_up(r.score_percent)) for r in results]


def topic_averages(results: Sequence[QuizResult]) -> List[TopicAverage]:
    """Average score per topic, in order of each topic's first appearance."""
    scores: Dict[str, List[float]] = {}
    for result in results:
        scores.setdefault(result.topic, []).append(result.score_percent)

    return [
        TopicAverage(topic=topic, average_score=round_half_up(sum(values) / len(values)))
        for topic, values in scores.items()
    ]


def weak_topics(averages: Sequence[TopicAverage],
                threshold: float = DEFAULT_WEAK_TOPIC_THRESHOLD) -> List[TopicAverage]:
    """Topics averaging below the threshold, weakest first. Ties keep their order."""
    below = [t for t in averages if t.average_score < threshold]
    return sorted(below, key=lambda t: t.average_score)


def format_duration(seconds: float) -> str:
    """Formats seconds as minutes and seconds, e.g. 245 -> '4m 5s'."""
    total = round_half_up(seconds)
    minutes, secs = divmod(total, 60)
    return f"{minutes}m {secs}s"


def score_band(percent: float) -> str:
    if percent >= 70:
        return "good"
    if percent >= 40:
        return "fair"
    return "poor"


class ProgressService:
    def __init__(self, weak_topic_threshold: float = DEFAULT_WEAK_TOPIC_THRESHOLD):
        self.weak_topic_threshold = weak_topic_threshold

    def get_summary(self, results: Sequence[QuizResult]) -> Dict[str, Any]:
        results = list(results)
        if not results:
            return {
                "total_quizzes": 0,
                "average_score": None,
                "average_time": None,
                "timeline": [],
                "topics": [],
                "weak_topics": [],
            }

        topics = topic_averages(results)
        return {
            "total_quizzes": len(results),
            "average_score": round(average_score_percent(results), 1),
            "average_time": average_time_seconds(results),
            "timeline": score_timeline(results),
            "topics": topics,
            "weak_topics": weak_topics(topics, self.weak_topic_threshold),
        }
