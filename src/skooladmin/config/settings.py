from dataclasses import dataclass
import os
from dotenv import load_dotenv


load_dotenv()


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    appwrite_endpoint: str = os.getenv("APPWRITE_ENDPOINT", "")
    appwrite_project_id: str = os.getenv("APPWRITE_PROJECT_ID", "")
    appwrite_api_key: str = os.getenv("APPWRITE_API_KEY") or os.getenv("APPWRITE_FUNCTION_API_KEY", "")
    appwrite_database_id: str = os.getenv("APPWRITE_DATABASE_ID", "")

    appwrite_students_collection_id: str = os.getenv("APPWRITE_STUDENTS_COLLECTION_ID", "students")
    appwrite_teachers_collection_id: str = os.getenv("APPWRITE_TEACHERS_COLLECTION_ID", "teachers")
    appwrite_classes_collection_id: str = os.getenv("APPWRITE_CLASSES_COLLECTION_ID", "classes")
    appwrite_assignments_collection_id: str = os.getenv("APPWRITE_ASSIGNMENTS_COLLECTION_ID", "assignments")
    appwrite_attendance_collection_id: str = os.getenv("APPWRITE_ATTENDANCE_COLLECTION_ID", "attendance")
    appwrite_fees_collection_id: str = os.getenv("APPWRITE_FEES_COLLECTION_ID", "fees")
    appwrite_grades_collection_id: str = os.getenv("APPWRITE_GRADES_COLLECTION_ID", "grades")
    appwrite_announcements_collection_id: str = os.getenv("APPWRITE_ANNOUNCEMENTS_COLLECTION_ID", "announcements")
    appwrite_profiles_collection_id: str = os.getenv("APPWRITE_PROFILES_COLLECTION_ID", "profiles")

    backend: str = os.getenv("SKOOLADMIN_BACKEND", "appwrite").strip().lower()
    stale_seconds: float = _float_env("SKOOLADMIN_STALE_SECONDS", 0.0)
    gc_seconds: float = _float_env("SKOOLADMIN_GC_SECONDS", 300.0)
    log_level: str = os.getenv("SKOOLADMIN_LOG_LEVEL", "INFO").upper()

    def collection_ids(self) -> dict[str, str]:
        return {
            "students": self.appwrite_students_collection_id,
            "teachers": self.appwrite_teachers_collection_id,
            "classes": self.appwrite_classes_collection_id,
            "assignments": self.appwrite_assignments_collection_id,
            "attendance": self.appwrite_attendance_collection_id,
            "fees": self.appwrite_fees_collection_id,
            "grades": self.appwrite_grades_collection_id,
            "announcements": self.appwrite_announcements_collection_id,
            "profiles": self.appwrite_profiles_collection_id,
        }


settings = Settings()
