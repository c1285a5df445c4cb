from .chart import Chart, ChartInfo, ChartResp
from .file import File, FileResp
from .level import Level, LevelDetailResp, LevelListItem, LevelResp, LevelTag
from .level_download import LevelDownload
from .level_rating import LevelRating, RatingSummary
from .profile import Profile, ProfileResp
from .record import ActivityStatistics, LeaderboardEntry, NewRecordResp, Record, RecordDetails
from .user import Email, EmailResp, ExternalAccount, User, UserResp, UserSummary

__all__ = [
    "ActivityStatistics",
    "Chart",
    "ChartInfo",
    "ChartResp",
    "Email",
    "EmailResp",
    "ExternalAccount",
    "File",
    "FileResp",
    "LeaderboardEntry",
    "Level",
    "LevelDetailResp",
    "LevelDownload",
    "LevelListItem",
    "LevelRating",
    "LevelResp",
    "LevelTag",
    "NewRecordResp",
    "Profile",
    "ProfileResp",
    "RatingSummary",
    "Record",
    "RecordDetails",
    "User",
    "UserResp",
    "UserSummary",
]
