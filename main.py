# main.py
# Medicine Reminder: Encrypted DB + Android AlarmManager + dose status engine
#
# - Run normally:   python main.py list
# - Add a medicine: python main.py add "Amoxicillin" --time 08:00 --time 20:00 --days 7 --dosage "500 mg"
# - Mark taken:     python main.py take 1
#
# Data directory resolution: MEDSAFE_DATA_DIR, ANDROID_PRIVATE, Android files dir,
# then ./medreminder_data next to this file.

import os, sys, json, uuid, logging, sqlite3, hashlib, argparse
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
from contextlib import contextmanager
from threading import RLock

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag

import dose_engine as engine
from dose_engine import (
    CancelResult, DoseStatus, InvalidSchedule, MedicineStatus, PlanResult,
    cancel_handles, evaluate_medicine, pick_dashboard_dose, schedule_medicine,
    validate_schedule,
)

try:
    from jnius import autoclass, cast
except Exception:
    autoclass = None
    cast = None

# -------------------------
# Package identity (for Java)
# -------------------------
PACKAGE_DOMAIN = "org.example"
PACKAGE_NAME = "medreminder"
JAVA_PACKAGE = f"{PACKAGE_DOMAIN}.{PACKAGE_NAME}"
JAVA_ALARM_RECEIVER = f"{JAVA_PACKAGE}.AlarmReceiver"

# -------------------------
# Paths / Locks
# -------------------------
_CRYPTO_LOCK = RLock()
_SCHEDULE_LOCK = RLock()
_LOG_LOCK = RLock()

def _android_ready() -> bool:
    return autoclass is not None and "ANDROID_ARGUMENT" in os.environ

def _is_writable_dir(p: Path) -> bool:
    try:
        p.mkdir(parents=True, exist_ok=True)
        t = p / f".writetest.{uuid.uuid4().hex}"
        t.write_text("ok", encoding="utf-8")
        t.unlink(missing_ok=True)
        return True
    except Exception:
        return False

def _android_files_dir() -> Optional[Path]:
    if not _android_ready():
        return None
    try:
        PythonActivity = autoclass("org.kivy.android.PythonActivity")
        activity = PythonActivity.mActivity
        return Path(str(activity.getFilesDir().getAbsolutePath()))
    except Exception:
        return None

def _app_base_dir() -> Path:
    for env in ("MEDSAFE_DATA_DIR", "ANDROID_PRIVATE"):
        p = os.environ.get(env)
        if p:
            d = Path(p) if env == "MEDSAFE_DATA_DIR" else Path(p) / "medreminder_data"
            if _is_writable_dir(d):
                return d

    af = _android_files_dir()
    if af:
        d = af / "medreminder_data"
        if _is_writable_dir(d):
            return d

    d = Path(__file__).resolve().parent / "medreminder_data"
    d.mkdir(parents=True, exist_ok=True)
    return d

BASE_DIR = _app_base_dir()
DB_PATH = BASE_DIR / "medicines.db.aes"
KEY_PATH = BASE_DIR / ".enc_key"
LOG_PATH = BASE_DIR / "app.log"
TMP_DIR = BASE_DIR / "tmp"
TMP_DIR.mkdir(parents=True, exist_ok=True)
SIM_ALARMS_PATH = BASE_DIR / "simulated_alarms.json"

LOG_LEVEL = os.environ.get("MEDSAFE_LOG_LEVEL", "INFO").upper()

# -------------------------
# Logging ring buffer
# -------------------------
class _RingLog:
    def __init__(self, max_lines=800):
        self.max_lines = int(max_lines)
        self._lines: List[str] = []
        self._lock = RLock()

    def add(self, line: str):
        line = (line or "").rstrip("\n")
        if not line:
            return
        with self._lock:
            self._lines.append(line)
            if len(self._lines) > self.max_lines:
                del self._lines[:-self.max_lines]

    def text(self) -> str:
        with self._lock:
            return "\n".join(self._lines)

    def clear(self):
        with self._lock:
            self._lines = []

_RING = _RingLog()

class _FileAndRingHandler(logging.Handler):
    """Mirrors every record into the in-app ring buffer and LOG_PATH."""

    def __init__(self):
        super().__init__()
        self.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))

    def emit(self, record):
        try:
            msg = self.format(record)
        except Exception:
            msg = str(record.getMessage())
        _RING.add(msg)
        try:
            with _LOG_LOCK:
                LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
                with LOG_PATH.open("a", encoding="utf-8") as f:
                    f.write(msg + "\n")
        except OSError:
            self.handleError(record)

logger = logging.getLogger("medreminder")
logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
if not any(isinstance(h, _FileAndRingHandler) for h in logger.handlers):
    logger.addHandler(_FileAndRingHandler())

def log_text() -> str:
    with _LOG_LOCK:
        if LOG_PATH.exists():
            return LOG_PATH.read_text(encoding="utf-8")
    return _RING.text()

def clear_log():
    _RING.clear()
    LOG_PATH.unlink(missing_ok=True)
    logger.info("log cleared")

# -------------------------
# Crypto utilities
# -------------------------
def _atomic_write_bytes(path: Path, data: bytes):
    tmp = path.with_suffix(path.suffix + f".tmp.{uuid.uuid4().hex}")
    tmp.parent.mkdir(parents=True, exist_ok=True)
    tmp.write_bytes(data)
    tmp.replace(path)

def aes_encrypt(data: bytes, key: bytes) -> bytes:
    aes = AESGCM(key)
    nonce = os.urandom(12)
    return nonce + aes.encrypt(nonce, data, None)

def aes_decrypt(data: bytes, key: bytes) -> bytes:
    if not data or len(data) < 12:
        raise InvalidTag("ciphertext too short")
    aes = AESGCM(key)
    nonce, ct = data[:12], data[12:]
    return aes.decrypt(nonce, ct, None)

def get_or_create_key() -> bytes:
    with _CRYPTO_LOCK:
        if KEY_PATH.exists():
            k = KEY_PATH.read_bytes()
            if len(k) >= 32:
                return k[:32]
            logger.warning("key file truncated; generating a new key")
        key = AESGCM.generate_key(bit_length=256)
        _atomic_write_bytes(KEY_PATH, key)
        logger.info("key stored: file")
        return key

def _tmp_path(prefix: str, suffix: str) -> Path:
    return TMP_DIR / f"{prefix}.{uuid.uuid4().hex}{suffix}"

# -------------------------
# Encrypted SQLite DB
# -------------------------
class MedicineNotFound(KeyError):
    pass

@dataclass
class MedicineRecord:
    id: int
    name: str
    dosage: str
    times: List[str]
    duration_days: int
    quantity: Optional[int]
    created_at: datetime
    taken_events: List[datetime] = field(default_factory=list)
    notification_handles: List[Any] = field(default_factory=list)

_SCHEMA = """
    CREATE TABLE medicines (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        dosage TEXT,
        times TEXT NOT NULL,             -- JSON list of "HH:MM"
        duration_days INTEGER NOT NULL,
        quantity INTEGER,
        created_at TEXT NOT NULL,
        notification_handles TEXT        -- JSON list of scheduler handles
    );
    CREATE TABLE taken_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        medicine_id INTEGER NOT NULL,
        taken_at TEXT NOT NULL,
        FOREIGN KEY(medicine_id) REFERENCES medicines(id)
    );
    CREATE INDEX idx_taken_medicine ON taken_events(medicine_id);
"""

_UPDATABLE = {"name", "dosage", "times", "duration_days", "quantity"}

class MedicineDB:
    def __init__(self, key: bytes):
        self.key = key
        self._ensure_db()

    def _ensure_db(self):
        with _CRYPTO_LOCK:
            if DB_PATH.exists():
                return
            tmp = _tmp_path("init", ".db")
            try:
                conn = sqlite3.connect(str(tmp))
                try:
                    conn.executescript(_SCHEMA)
                    conn.commit()
                finally:
                    conn.close()
                _atomic_write_bytes(DB_PATH, aes_encrypt(tmp.read_bytes(), self.key))
                logger.info(f"created encrypted db at {DB_PATH}")
            finally:
                tmp.unlink(missing_ok=True)

    @contextmanager
    def _get_conn(self, write: bool = False):
        # Decrypt to a scratch file, hand out a connection, re-seal on write.
        tmp = _tmp_path("work", ".db")
        try:
            with _CRYPTO_LOCK:
                self._ensure_db()
                _atomic_write_bytes(tmp, aes_decrypt(DB_PATH.read_bytes(), self.key))

            conn = sqlite3.connect(str(tmp))
            conn.row_factory = sqlite3.Row
            try:
                yield conn
            finally:
                conn.close()

            if write:
                with _CRYPTO_LOCK:
                    _atomic_write_bytes(DB_PATH, aes_encrypt(tmp.read_bytes(), self.key))
        finally:
            tmp.unlink(missing_ok=True)

    @staticmethod
    def _row_to_record(row: sqlite3.Row, taken: List[datetime]) -> MedicineRecord:
        return MedicineRecord(
            id=row["id"],
            name=row["name"],
            dosage=row["dosage"] or "",
            times=json.loads(row["times"] or "[]"),
            duration_days=int(row["duration_days"]),
            quantity=row["quantity"],
            created_at=datetime.fromisoformat(row["created_at"]),
            taken_events=taken,
            notification_handles=json.loads(row["notification_handles"] or "[]"),
        )

    @staticmethod
    def _taken_for(conn, med_id: int) -> List[datetime]:
        rows = conn.execute(
            "SELECT taken_at FROM taken_events WHERE medicine_id=? ORDER BY id", (med_id,)
        ).fetchall()
        out = []
        for r in rows:
            ts = engine.normalize_instant(r["taken_at"])
            if ts is None:
                logger.warning(f"unparseable taken_at for med_id={med_id}: {r['taken_at']!r}")
                continue
            out.append(ts)
        return out

    def add_medicine(self, name: str, times: List[str], duration_days: int,
                     dosage: str = "", quantity: Optional[int] = None,
                     created_at: Optional[datetime] = None) -> int:
        created_at = created_at or datetime.now()
        with self._get_conn(write=True) as conn:
            c = conn.execute("""
                INSERT INTO medicines (name, dosage, times, duration_days, quantity, created_at, notification_handles)
                VALUES (?, ?, ?, ?, ?, ?, '[]')
            """, (name, dosage, json.dumps([str(t) for t in times]), int(duration_days), quantity,
                  created_at.isoformat()))
            conn.commit()
            return c.lastrowid

    def get_medicine(self, med_id: int) -> MedicineRecord:
        with self._get_conn() as conn:
            row = conn.execute("SELECT * FROM medicines WHERE id=?", (med_id,)).fetchone()
            if row is None:
                raise MedicineNotFound(med_id)
            return self._row_to_record(row, self._taken_for(conn, med_id))

    def get_medicines(self) -> List[MedicineRecord]:
        with self._get_conn() as conn:
            rows = conn.execute("SELECT * FROM medicines ORDER BY name, id").fetchall()
            return [self._row_to_record(r, self._taken_for(conn, r["id"])) for r in rows]

    def update_medicine(self, med_id: int, **kwargs):
        bad = set(kwargs) - _UPDATABLE
        if bad:
            raise ValueError(f"cannot update fields: {sorted(bad)}")
        if "times" in kwargs:
            kwargs["times"] = json.dumps([str(t) for t in kwargs["times"]])
        with self._get_conn(write=True) as conn:
            sets = ",".join(f"{k}=?" for k in kwargs)
            c = conn.execute(f"UPDATE medicines SET {sets} WHERE id=?", [*kwargs.values(), med_id])
            if c.rowcount == 0:
                raise MedicineNotFound(med_id)
            conn.commit()

    def set_notification_handles(self, med_id: int, handles: List[Any]):
        with self._get_conn(write=True) as conn:
            c = conn.execute("UPDATE medicines SET notification_handles=? WHERE id=?",
                             (json.dumps(list(handles)), med_id))
            if c.rowcount == 0:
                raise MedicineNotFound(med_id)
            conn.commit()

    def append_taken_event(self, med_id: int, taken_at: datetime):
        with self._get_conn(write=True) as conn:
            if conn.execute("SELECT 1 FROM medicines WHERE id=?", (med_id,)).fetchone() is None:
                raise MedicineNotFound(med_id)
            conn.execute("INSERT INTO taken_events (medicine_id, taken_at) VALUES (?, ?)",
                         (med_id, taken_at.isoformat()))
            conn.commit()

    def get_taken_events(self, med_id: int) -> List[datetime]:
        with self._get_conn() as conn:
            return self._taken_for(conn, med_id)

    def get_taken_log(self, limit=80) -> List[Dict]:
        with self._get_conn() as conn:
            rows = conn.execute("""
                SELECT t.*, m.name AS medicine_name, m.dosage AS medicine_dosage
                FROM taken_events t
                LEFT JOIN medicines m ON t.medicine_id = m.id
                ORDER BY t.taken_at DESC, t.id DESC
                LIMIT ?
            """, (limit,)).fetchall()
            return [dict(r) for r in rows]

    def delete_medicine(self, med_id: int):
        with self._get_conn(write=True) as conn:
            conn.execute("DELETE FROM taken_events WHERE medicine_id=?", (med_id,))
            c = conn.execute("DELETE FROM medicines WHERE id=?", (med_id,))
            if c.rowcount == 0:
                raise MedicineNotFound(med_id)
            conn.commit()

# -------------------------
# Android AlarmManager scheduling
# -------------------------
class SchedulingFailed(RuntimeError):
    pass

def stable_alarm_request_code(med_key: Any, when_dt: datetime) -> int:
    # Stable per med + date + time (to reduce duplicates)
    key = f"{med_key}|{when_dt.strftime('%Y-%m-%d %H:%M')}"
    h = hashlib.sha256(key.encode("utf-8")).digest()
    return int.from_bytes(h[:4], "big") & 0x7FFFFFFF

class AndroidAlarm:
    """
    Notification scheduler backed by AlarmManager broadcasts to AlarmReceiver.
    Handles are PendingIntent request codes. Off-device, alarms live in a
    simulated registry so desktop runs and tests behave the same way; with a
    registry_path the registry is kept on disk and shared across processes.
    """

    def __init__(self, registry_path: Optional[Path] = None):
        self.registry_path = registry_path
        self._simulated: Dict[int, Tuple[datetime, Dict]] = {}
        self._lock = RLock()

    def _load_registry(self):
        if self.registry_path is None or not self.registry_path.exists():
            return
        try:
            raw = json.loads(self.registry_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.exception(f"simulated alarm registry unreadable: {self.registry_path}")
            return
        self._simulated = {int(rc): (datetime.fromisoformat(when), payload)
                           for rc, (when, payload) in raw.items()}

    def _save_registry(self):
        if self.registry_path is None:
            return
        data = {str(rc): [when.isoformat(), payload] for rc, (when, payload) in self._simulated.items()}
        _atomic_write_bytes(self.registry_path, json.dumps(data).encode("utf-8"))

    def _app_ctx(self):
        PythonActivity = autoclass("org.kivy.android.PythonActivity")
        return PythonActivity.mActivity.getApplicationContext()

    def _pending_intent(self, app_ctx, request_code: int, flags: int, title="", body=""):
        Intent = autoclass("android.content.Intent")
        PendingIntent = autoclass("android.app.PendingIntent")
        intent = Intent()
        intent.setClassName(app_ctx, JAVA_ALARM_RECEIVER)
        if title:
            intent.putExtra("title", title)
            intent.putExtra("body", body)
        return PendingIntent.getBroadcast(app_ctx, int(request_code), intent, int(flags | PendingIntent.FLAG_IMMUTABLE))

    def create(self, at_time: datetime, payload: Dict) -> int:
        data = payload.get("data") or {}
        med_key = data.get("medicine_id")
        if med_key is None:
            med_key = data.get("medicine_name") or data.get("appointment_with") or ""
        rc = stable_alarm_request_code(med_key, at_time)
        title = payload.get("title", "Medicine Reminder")
        body = payload.get("body", "")

        if not _android_ready():
            with self._lock:
                self._load_registry()
                self._simulated[rc] = (at_time, dict(payload))
                self._save_registry()
            logger.info(f"[Simulated alarm] rc={rc} {title} @ {at_time}")
            return rc

        try:
            AlarmManager = autoclass("android.app.AlarmManager")
            PendingIntent = autoclass("android.app.PendingIntent")
            Context = autoclass("android.content.Context")
            app_ctx = self._app_ctx()

            pi = self._pending_intent(app_ctx, rc, PendingIntent.FLAG_UPDATE_CURRENT, title, body)
            am = cast(AlarmManager, app_ctx.getSystemService(Context.ALARM_SERVICE))
            trigger_ms = int(at_time.timestamp() * 1000)

            if can_schedule_exact_alarms(am):
                am.setExactAndAllowWhileIdle(AlarmManager.RTC_WAKEUP, trigger_ms, pi)
                logger.info(f"alarm exact+idle rc={rc} @ {at_time}")
            else:
                am.setAndAllowWhileIdle(AlarmManager.RTC_WAKEUP, trigger_ms, pi)
                logger.info(f"alarm idle(fallback) rc={rc} @ {at_time}")
            return rc
        except Exception as e:
            raise SchedulingFailed(f"alarm scheduling failed rc={rc}") from e

    def cancel(self, handle: Any) -> bool:
        try:
            rc = int(handle)
        except (TypeError, ValueError):
            logger.warning(f"cancel: not a request code: {handle!r}")
            return False

        if not _android_ready():
            with self._lock:
                self._load_registry()
                found = self._simulated.pop(rc, None) is not None
                if found:
                    self._save_registry()
            logger.info(f"[Simulated alarm] cancel rc={rc} found={found}")
            return found

        AlarmManager = autoclass("android.app.AlarmManager")
        PendingIntent = autoclass("android.app.PendingIntent")
        Context = autoclass("android.content.Context")
        app_ctx = self._app_ctx()
        pi = self._pending_intent(app_ctx, rc, PendingIntent.FLAG_NO_CREATE)
        if pi is None:
            return False
        am = cast(AlarmManager, app_ctx.getSystemService(Context.ALARM_SERVICE))
        am.cancel(pi)
        pi.cancel()
        logger.info(f"alarm cancelled rc={rc}")
        return True

    def pending(self) -> Dict[int, Tuple[datetime, Dict]]:
        with self._lock:
            self._load_registry()
            return dict(self._simulated)

def can_schedule_exact_alarms(am=None) -> bool:
    """
    Android 12+ has canScheduleExactAlarms().
    We still schedule with a fallback if false.
    """
    if not _android_ready():
        return False
    try:
        BuildVERSION = autoclass("android.os.Build$VERSION")
        if int(BuildVERSION.SDK_INT) < 31:
            return True
        return bool(am.canScheduleExactAlarms())
    except Exception:
        logger.exception("canScheduleExactAlarms check failed")
        return False

# -------------------------
# Controller
# -------------------------
class ReminderController:
    def __init__(self, db: MedicineDB, scheduler, clock: Callable[[], datetime] = datetime.now,
                 user_name: Optional[str] = None):
        self.db = db
        self.scheduler = scheduler
        self.clock = clock
        self.user_name = user_name

    def _plan(self, rec: MedicineRecord, days: int, now: datetime) -> PlanResult:
        if days <= 0:
            return PlanResult()
        return schedule_medicine(self.scheduler, rec.times, days, now, rec.name,
                                 dosage=rec.dosage, user_name=self.user_name, medicine_id=rec.id)

    def create_medicine(self, name: str, times: List[Any], duration_days: int,
                        dosage: str = "", quantity: Optional[int] = None) -> Tuple[MedicineRecord, PlanResult]:
        name = (name or "").strip()
        if not name:
            raise InvalidSchedule("medicine name is required")
        schedule = validate_schedule(times, duration_days)
        now = self.clock()
        med_id = self.db.add_medicine(name, [str(t) for t in schedule], duration_days,
                                      dosage=dosage, quantity=quantity, created_at=now)
        with _SCHEDULE_LOCK:
            rec = self.db.get_medicine(med_id)
            result = self._plan(rec, duration_days, now)
            self.db.set_notification_handles(med_id, result.handles)
        rec.notification_handles = result.handles
        logger.info(f"created medicine id={med_id} name={name} reminders={len(result.handles)} failed={result.failures}")
        return rec, result

    def edit_medicine(self, med_id: int, **changes) -> PlanResult:
        bad = set(changes) - _UPDATABLE
        if bad:
            raise ValueError(f"cannot update fields: {sorted(bad)}")
        rec = self.db.get_medicine(med_id)
        updates = {k: v for k, v in changes.items() if v is not None}
        if "name" in updates:
            updates["name"] = updates["name"].strip()
            if not updates["name"]:
                raise InvalidSchedule("medicine name is required")
        schedule = validate_schedule(updates.get("times") or rec.times,
                                     updates.get("duration_days", rec.duration_days))
        if "times" in updates:
            updates["times"] = [str(t) for t in schedule]

        now = self.clock()
        with _SCHEDULE_LOCK:
            # Old reminders stay live until the record change has been stored.
            if updates:
                self.db.update_medicine(med_id, **updates)
            cancel_handles(self.scheduler, rec.notification_handles)
            result = PlanResult()
            try:
                rec = self.db.get_medicine(med_id)
                elapsed = (now.date() - rec.created_at.date()).days
                result = self._plan(rec, rec.duration_days - elapsed, now)
                self.db.set_notification_handles(med_id, result.handles)
            except Exception:
                logger.exception(f"re-plan failed for med_id={med_id}; clearing reminders")
                cancel_handles(self.scheduler, result.handles)
                self.db.set_notification_handles(med_id, [])
                raise
        logger.info(f"edited medicine id={med_id} reminders={len(result.handles)} failed={result.failures}")
        return result

    def mark_taken(self, med_id: int) -> datetime:
        ts = self.clock()
        self.db.append_taken_event(med_id, ts)
        logger.info(f"dose taken: med_id={med_id} at={ts.isoformat()}")
        return ts

    def delete_medicine(self, med_id: int) -> CancelResult:
        rec = self.db.get_medicine(med_id)
        with _SCHEDULE_LOCK:
            result = cancel_handles(self.scheduler, rec.notification_handles)
            self.db.delete_medicine(med_id)
        logger.info(f"deleted medicine id={med_id} cancelled={result.cancelled} ignored={result.ignored}")
        return result

    def status(self, med_id: int) -> MedicineStatus:
        return evaluate_medicine(self.db.get_medicine(med_id), self.clock())

    def statuses(self) -> List[MedicineStatus]:
        now = self.clock()
        return [evaluate_medicine(r, now) for r in self.db.get_medicines()]

    def dashboard(self) -> Optional[MedicineStatus]:
        return pick_dashboard_dose(self.db.get_medicines(), self.clock())

# -------------------------
# CLI
# -------------------------
def describe_status(ms: MedicineStatus) -> str:
    st = ms.state
    if st.status is DoseStatus.DUE:
        text = f"DUE now ({st.dose_time:%H:%M})"
    elif st.status is DoseStatus.AVAILABLE:
        text = f"available early, due in {st.time_until_dose} min ({st.dose_time:%H:%M})"
    elif st.status is DoseStatus.NEXT:
        text = f"next dose at {st.dose_time:%H:%M}"
    elif st.status is DoseStatus.COMPLETED:
        text = "all doses done for today"
    else:
        text = f"schedule error: {st.reason}"
    extras = []
    if ms.course:
        extras.append(ms.course.label)
    if ms.doses_left is not None:
        extras.append(f"{ms.doses_left} doses left")
    suffix = f"  [{', '.join(extras)}]" if extras else ""
    return f"#{ms.medicine_id} {ms.name}: {text}{suffix}"

def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="medsafe", description="Medicine reminders")
    p.add_argument("--user", default=None, help="name used to personalise reminders")
    sub = p.add_subparsers(dest="cmd", required=True)

    a = sub.add_parser("add", help="add a medicine and schedule its reminders")
    a.add_argument("name")
    a.add_argument("--time", dest="times", action="append", required=True, help="HH:MM, repeatable")
    a.add_argument("--days", type=int, required=True)
    a.add_argument("--dosage", default="")
    a.add_argument("--quantity", type=int, default=None)

    e = sub.add_parser("edit", help="change a medicine and re-plan its reminders")
    e.add_argument("id", type=int)
    e.add_argument("--name", default=None)
    e.add_argument("--time", dest="times", action="append", default=None)
    e.add_argument("--days", dest="duration_days", type=int, default=None)
    e.add_argument("--dosage", default=None)
    e.add_argument("--quantity", type=int, default=None)

    sub.add_parser("list", help="show every medicine with its current status")
    sub.add_parser("next", help="show the most pressing dose")
    sub.add_parser("log", help="show recent taken events")
    dl = sub.add_parser("debuglog", help="print the app debug log")
    dl.add_argument("--clear", action="store_true")

    t = sub.add_parser("take", help="mark a dose as taken now")
    t.add_argument("id", type=int)

    d = sub.add_parser("delete", help="cancel reminders and remove a medicine")
    d.add_argument("id", type=int)
    return p

def main(argv: Optional[List[str]] = None, scheduler=None, clock: Callable[[], datetime] = datetime.now) -> int:
    args = _build_parser().parse_args(argv)
    ctl = ReminderController(MedicineDB(get_or_create_key()), scheduler or AndroidAlarm(SIM_ALARMS_PATH),
                             clock=clock, user_name=args.user)
    try:
        if args.cmd == "add":
            rec, res = ctl.create_medicine(args.name, args.times, args.days,
                                           dosage=args.dosage, quantity=args.quantity)
            print(f"added #{rec.id} {rec.name}: {len(res.handles)} reminders scheduled"
                  + (f", {res.failures} failed" if res.failures else ""))
        elif args.cmd == "edit":
            res = ctl.edit_medicine(args.id, name=args.name, times=args.times,
                                    duration_days=args.duration_days, dosage=args.dosage,
                                    quantity=args.quantity)
            print(f"updated #{args.id}: {len(res.handles)} reminders scheduled")
        elif args.cmd == "list":
            statuses = ctl.statuses()
            if not statuses:
                print("no medicines")
            for ms in statuses:
                print(describe_status(ms))
        elif args.cmd == "next":
            ms = ctl.dashboard()
            print(describe_status(ms) if ms else "nothing scheduled")
        elif args.cmd == "log":
            for row in ctl.db.get_taken_log():
                print(f"{row['taken_at']}  {row['medicine_name'] or '?'}  {row['medicine_dosage'] or ''}".rstrip())
        elif args.cmd == "debuglog":
            if args.clear:
                clear_log()
            else:
                print(log_text())
        elif args.cmd == "take":
            ts = ctl.mark_taken(args.id)
            print(f"marked #{args.id} taken at {ts:%H:%M}")
        elif args.cmd == "delete":
            res = ctl.delete_medicine(args.id)
            print(f"deleted #{args.id} ({res.cancelled} reminders cancelled)")
    except MedicineNotFound as e:
        print(f"no medicine with id {e.args[0]}", file=sys.stderr)
        return 1
    except InvalidSchedule as e:
        print(f"invalid medicine: {e}", file=sys.stderr)
        return 2
    return 0

if __name__ == "__main__":
    sys.exit(main())
