# service/med_service.py
# Background reminder loop: re-evaluates every medicine on a timer and
# posts a local notification once per due dose.
import os, time, logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Tuple

from main import MedicineDB, get_or_create_key, autoclass, _android_ready
from dose_engine import DoseStatus, evaluate_medicine, medicine_title

logger = logging.getLogger("medreminder.service")

SERVICE_INTERVAL = float(os.environ.get("MEDSAFE_SERVICE_INTERVAL", "20"))
FIRED_TTL = timedelta(days=1)

def notify(title: str, text: str):
    if not _android_ready():
        logger.info(f"[notify] {title}: {text}")
        return
    PythonService = autoclass("org.kivy.android.PythonService")
    service = PythonService.mService
    Context = autoclass("android.content.Context")
    NotificationManager = autoclass("android.app.NotificationManager")
    NotificationChannel = autoclass("android.app.NotificationChannel")
    Notification = autoclass("android.app.Notification")
    Build = autoclass("android.os.Build")

    channel_id = "medsafe_reminders"
    nm = service.getSystemService(Context.NOTIFICATION_SERVICE)

    if Build.VERSION.SDK_INT >= 26:
        ch = NotificationChannel(channel_id, "MedSafe Reminders", NotificationManager.IMPORTANCE_HIGH)
        ch.setDescription("Medicine reminders from MedSafe background service")
        nm.createNotificationChannel(ch)
        builder = Notification.Builder(service, channel_id)
    else:
        builder = Notification.Builder(service)

    builder.setContentTitle(title)
    builder.setContentText(text)
    builder.setSmallIcon(service.getApplicationInfo().icon)
    builder.setAutoCancel(True)

    nid = int(time.time()) & 0x7fffffff
    nm.notify(nid, builder.build())

class ReminderService:
    def __init__(self, db: MedicineDB, notifier: Callable[[str, str], None] = notify,
                 clock: Callable[[], datetime] = datetime.now):
        self.db = db
        self.notifier = notifier
        self.clock = clock
        # (med_id, "YYYY-mm-dd HH:MM") -> when it fired
        self._fired: Dict[Tuple[int, str], datetime] = {}

    def tick(self) -> List[Tuple[int, str]]:
        now = self.clock()
        fired = []
        for rec in self.db.get_medicines():
            ms = evaluate_medicine(rec, now)
            if ms.state.status is not DoseStatus.DUE:
                continue
            dose_time = ms.state.dose_time
            key = (rec.id, dose_time.strftime("%Y-%m-%d %H:%M"))
            if key in self._fired:
                continue
            self._fired[key] = now
            text = f"{rec.name} • {rec.dosage} @ {dose_time:%H:%M}" if rec.dosage else f"{rec.name} @ {dose_time:%H:%M}"
            try:
                self.notifier(medicine_title(rec.name), text)
            except Exception:
                logger.exception(f"notify failed for med_id={rec.id}")
                continue
            fired.append(key)

        self._fired = {k: v for k, v in self._fired.items() if now - v < FIRED_TTL}
        return fired

def main_loop(interval: float = SERVICE_INTERVAL):
    service = ReminderService(MedicineDB(get_or_create_key()))
    logger.info(f"reminder service started interval={interval}s")

    while True:
        try:
            fired = service.tick()
            if fired:
                logger.info(f"service fired {len(fired)} reminders")
        except Exception:
            # DB might not exist until app opened once
            logger.exception("service tick failed")
        time.sleep(interval)

if __name__ == "__main__":
    main_loop()
