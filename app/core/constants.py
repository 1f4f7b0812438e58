# app/core/constants.py

# ==========================================================
# DEPARTMENT CODES
# ==========================================================
DEPT_CODE_HNS = "HNS"  # Humanities & Sciences: owns every first-year section

VALID_DEPARTMENTS = {"CSE", "AI_DS", "ECE", "MECH", "CIVIL", "EEE", "IT", DEPT_CODE_HNS}

FIRST_YEAR_LABELS = {"1", "I", "FIRST"}

# ==========================================================
# PUSH PAYLOAD DEFAULTS
# ==========================================================
PUSH_ICON = "/images/android-chrome-192x192.png"
PUSH_BADGE = "/images/favicon-32x32.png"
PUSH_TAG = "msec-academics"


def is_first_year(year: str | None) -> bool:
    return bool(year) and str(year).strip().upper() in FIRST_YEAR_LABELS


def approving_department_for(department: str, year: str | None) -> str:
    """First-year staff are approved by the HNS HOD, everyone else by their own HOD."""
    return DEPT_CODE_HNS if is_first_year(year) else department
