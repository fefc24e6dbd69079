"""
Serial and file-key formatting for F-system records

Grant serials:  LCC-{DONOR}-{STATE}-{MMYY}-{NNNN}
Workplan ids:   {grant serial}-{NNN}
MOU codes:      {PART}-{STA}-{YYMMDD}-{NNN}
"""
import re
import secrets
from datetime import date

SERIAL_ORG_PREFIX = "LCC"
SERIAL_WIDTH = 4
WORKPLAN_WIDTH = 3


def pad_sequence(number, width=WORKPLAN_WIDTH):
    return str(int(number)).zfill(width)


def validate_mmyy(value):
    """Return True when value is exactly four digits (month + two-digit year)"""
    return isinstance(value, str) and len(value) == 4 and value.isdigit()


def serial_prefix(donor_short, state_short, mmyy):
    return f"{SERIAL_ORG_PREFIX}-{donor_short}-{state_short.upper()}-{mmyy}-"


def build_grant_serial(donor_short, state_short, mmyy, number):
    return f"{serial_prefix(donor_short, state_short, mmyy)}{pad_sequence(number, SERIAL_WIDTH)}"


def next_serial_number(existing_serials, prefix):
    """
    Next serial number for a prefix

    Args:
        existing_serials: iterable of serial strings already issued
        prefix: prefix produced by serial_prefix()

    Returns:
        int: highest trailing number carrying the prefix plus one
    """
    highest = 0
    for serial in existing_serials:
        serial = serial or ""
        if not serial.startswith(prefix):
            continue
        tail = serial[len(prefix):]
        if tail.isdigit():
            highest = max(highest, int(tail))
    return highest + 1


def workplan_grant_id(grant_serial, workplan_number):
    return f"{grant_serial}-{pad_sequence(workplan_number)}"


def is_assigned_grant_id(grant_id):
    """Workplans carry an LCC- grant id only once assigned to a grant"""
    return bool(grant_id) and str(grant_id).startswith(f"{SERIAL_ORG_PREFIX}-")


def _letters(value):
    return re.sub(r"[^A-Za-z]", "", value or "").upper()


def generate_mou_code(partner_name, state, today=None, rand=None):
    """
    Build an MOU code when the caller does not supply one

    Args:
        partner_name: partner organisation name
        state: state the MOU covers
        today: date used for the YYMMDD part (defaults to today)
        rand: three-digit suffix (random when omitted)

    Returns:
        str, e.g. "LOCA-KHA-250114-417"
    """
    today = today or date.today()
    partner_part = _letters(partner_name or "Localization Hub")[:4] or "LHUB"
    state_part = _letters(state or "GEN")[:3]
    if rand is None:
        rand = 100 + secrets.randbelow(900)
    return f"{partner_part}-{state_part}-{today.strftime('%y%m%d')}-{rand}"


def file_extension(key, default="pdf"):
    if not key or "." not in key:
        return default
    ext = key.rsplit(".", 1)[-1]
    return ext or default


def workplan_file_key(donor_short, state_short, mmyy, grant_id, ext):
    return f"f1-forms/{donor_short}/{state_short}/{mmyy}/{grant_id}.{ext}"


def safe_path_segment(value):
    text = str(value or "UNKNOWN").strip() or "UNKNOWN"
    text = re.sub(r"[^\w\-. ]+", "-", text)
    return re.sub(r"\s+", "-", text)


def financial_report_file_key(state, err, grant_serial, summary_id, ext):
    return "f4-financial-reports/{}/{}/{}/{}/summary.{}".format(
        safe_path_segment(state), safe_path_segment(err), safe_path_segment(grant_serial), summary_id, ext.lower()
    )


def program_report_file_key(state, err, grant_serial, report_id, ext):
    return "f5-program-reports/{}/{}/{}/{}/report.{}".format(
        safe_path_segment(state), safe_path_segment(err), safe_path_segment(grant_serial), report_id, ext.lower()
    )


def mou_document_key(mou_id, mou_code):
    return f"f3-mous/{mou_id}/{mou_code}.html"
