from collections.abc import Iterable
from dataclasses import dataclass
import math
from typing import TypeVar

from rhythmhub.const import (
    EXP_DIFFICULTY_MAX,
    EXP_DIFFICULTY_MIN,
    GRADE_THRESHOLDS,
    MAX_SCORE,
    RATING_PRIOR_MEAN,
    RATING_PRIOR_VOTES,
    Grade,
)

T = TypeVar("T", bound=int | float)


def clamp(n: T, min_value: T, max_value: T) -> T:
    if n < min_value:
        return min_value
    elif n > max_value:
        return max_value
    else:
        return n


def weighted_rating(average: float | None, count: int) -> float | None:
    """贝叶斯加权评分

    `(prior_mean * prior_votes + average * count) / (prior_votes + count)`，
    没有评分时为 None（排序时排在最后）。
    """
    if not count or average is None:
        return None
    total = average * count
    return (RATING_PRIOR_MEAN * RATING_PRIOR_VOTES + total) / (RATING_PRIOR_VOTES + count)


def performance_rating(accuracy: float) -> float:
    """准确率到表现系数的分段曲线"""
    if accuracy < 0.7:
        return math.sqrt(accuracy / 0.7) * 0.5
    if accuracy < 0.97:
        return 0.7 - 0.2 * math.log10((1.0 - accuracy) / 0.03)
    if accuracy < 0.997:
        return 0.7 - 0.16 * math.log10((1.0 - accuracy) / 0.03)
    if accuracy < 0.9997:
        return 0.78 - 0.08 * math.log10((1.0 - accuracy) / 0.03)
    return accuracy * 200.0 - 199.0


def personal_rating(plays: Iterable[tuple[float, float]]) -> float | None:
    """所有成绩的 `performance_rating(accuracy) * difficulty` 的平均值

    plays: (accuracy, difficulty)
    """
    values = [performance_rating(accuracy) * difficulty for accuracy, difficulty in plays]
    if not values:
        return None
    return sum(values) / len(values)


def grade(score: int) -> Grade:
    for threshold, g in GRADE_THRESHOLDS:
        if score >= threshold:
            return g
    return Grade.F


@dataclass
class ExpPlay:
    level_id: int
    notes_count: int
    difficulty: float
    duration: float
    score: int
    ranked: bool


@dataclass
class ExpResult:
    basic_exp: float
    level_exp: float
    total_exp: float
    current_level: float
    next_level_exp: float


def exp_base(play: ExpPlay) -> float:
    ranked_factor = 1.0 if play.ranked else 0.5
    return play.notes_count * (play.difficulty / 15) + play.duration / 60 * 100 * ranked_factor


def calculate_level(total_exp: float) -> float:
    return (math.sqrt(6 * total_exp + 400) + 20) / 30 + 1


def calculate_next_level_exp(current_level: float) -> float:
    return 150 * current_level * current_level - 200 * current_level


def calculate_exp(plays: Iterable[ExpPlay]) -> ExpResult:
    """计算玩家经验值与等级

    - basic_exp: 每条成绩 `sqrt(score / 1e6) * base`
    - level_exp: 每个谱面取最高的 `(score / 1e6)^2 * base * 1.5`
    """
    basic_exp = 0.0
    best_per_level: dict[int, float] = {}
    for play in plays:
        if not EXP_DIFFICULTY_MIN <= play.difficulty <= EXP_DIFFICULTY_MAX:
            continue
        base = exp_base(play)
        ratio = max(play.score, 0) / MAX_SCORE
        basic_exp += math.sqrt(ratio) * base
        level_score = ratio * ratio * base * 1.5
        if level_score > best_per_level.get(play.level_id, float("-inf")):
            best_per_level[play.level_id] = level_score

    level_exp = sum(best_per_level.values())
    total_exp = basic_exp + level_exp
    current_level = calculate_level(total_exp)
    return ExpResult(
        basic_exp=basic_exp,
        level_exp=level_exp,
        total_exp=total_exp,
        current_level=current_level,
        next_level_exp=calculate_next_level_exp(current_level),
    )
