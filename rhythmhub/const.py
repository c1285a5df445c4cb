from enum import Enum

MAX_SCORE = 1_000_000

# 贝叶斯评分先验：相当于额外的 10 票 6 分
RATING_PRIOR_VOTES = 10
RATING_PRIOR_MEAN = 6
RATING_MIN = 1
RATING_MAX = 10

# 经验值只统计该难度区间内的谱面
EXP_DIFFICULTY_MIN = 1
EXP_DIFFICULTY_MAX = 16


class Grade(str, Enum):
    MAX = "MAX"
    SSS = "SSS"
    SS = "SS"
    S = "S"
    A = "A"
    B = "B"
    C = "C"
    D = "D"
    F = "F"


# 从高到低匹配
GRADE_THRESHOLDS: list[tuple[int, Grade]] = [
    (1_000_000, Grade.MAX),
    (999_500, Grade.SSS),
    (990_000, Grade.SS),
    (950_000, Grade.S),
    (900_000, Grade.A),
    (800_000, Grade.B),
    (700_000, Grade.C),
    (600_000, Grade.D),
]


class ChartType(str, Enum):
    EASY = "easy"
    HARD = "hard"
    EXTREME = "extreme"


class Role(str, Enum):
    USER = "user"
    MODERATOR = "moderator"
    ADMIN = "admin"

    def can_manage_levels(self) -> bool:
        return self in (Role.MODERATOR, Role.ADMIN)


# 审查标记为 ccp 的谱面在全球站依然可见
GLOBAL_VISIBLE_CENSORSHIP = "ccp"
