import os
import io
import asyncio
import tempfile
import unittest
from contextlib import redirect_stdout, redirect_stderr
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

os.environ.setdefault("MEDSAFE_DATA_DIR", tempfile.mkdtemp(prefix="medsafe-test-"))

import main as m
import dose_engine as de
from dose_engine import DoseStatus, InvalidSchedule, TimeOfDay
from service.med_service import ReminderService


def _run(coro):
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop and loop.is_running():
        return asyncio.run_coroutine_threadsafe(coro, loop).result(timeout=30)
    return asyncio.run(coro)


def at(hh, mm, ss=0, day=date(2026, 3, 10)):
    return datetime.combine(day, time(hh, mm, ss))


class FakeScheduler:
    def __init__(self, fail_at=()):
        self.fail_at = set(fail_at)
        self.live = {}
        self.cancelled = []
        self._n = 0

    def create(self, when, payload):
        if when in self.fail_at:
            raise RuntimeError("scheduler unavailable")
        self._n += 1
        handle = f"notif-{self._n}"
        self.live[handle] = (when, payload)
        return handle

    def cancel(self, handle):
        if handle == "explode":
            raise RuntimeError("bad handle")
        if self.live.pop(handle, None) is None:
            return False
        self.cancelled.append(handle)
        return True


class AsyncFakeScheduler(FakeScheduler):
    async def create(self, when, payload):
        await asyncio.sleep(0)
        return FakeScheduler.create(self, when, payload)


class TestTimeHelpers(unittest.TestCase):
    def test_parse_variants(self):
        self.assertEqual(TimeOfDay.parse("08:05"), TimeOfDay(8, 5))
        self.assertEqual(TimeOfDay.parse(time(21, 30)), TimeOfDay(21, 30))
        self.assertEqual(TimeOfDay.parse(datetime(2020, 1, 1, 7, 15)), TimeOfDay(7, 15))
        self.assertEqual(TimeOfDay.parse((13, 0)), TimeOfDay(13, 0))
        self.assertEqual(TimeOfDay.parse({"hour": 6, "minute": 45}), TimeOfDay(6, 45))
        self.assertEqual(str(TimeOfDay(6, 5)), "06:05")

    def test_parse_rejects_garbage(self):
        for bad in ("25:00", "8", "aa:bb", None, (1, 2, 3), {"hour": 3}):
            with self.assertRaises(InvalidSchedule):
                TimeOfDay.parse(bad)

    def test_sort_schedule_drops_invalid_and_duplicates(self):
        out = de.sort_schedule(["20:00", "nope", "08:00", "08:00", (12, 30)])
        self.assertEqual(out, [TimeOfDay(8, 0), TimeOfDay(12, 30), TimeOfDay(20, 0)])

    def test_normalize_instant(self):
        self.assertEqual(de.normalize_instant("2026-03-10T09:10:00"), at(9, 10))
        self.assertEqual(de.normalize_instant(date(2026, 3, 10)), at(0, 0))
        self.assertEqual(de.normalize_instant("2026-03-10T09:10:00Z").tzinfo, timezone.utc)
        self.assertIsNone(de.normalize_instant("yesterday-ish"))
        self.assertIsNone(de.normalize_instant(None))
        self.assertIsNone(de.normalize_instant(float("nan")))

        class CloudTimestamp:
            def to_datetime(self):
                return at(9, 0)

        self.assertEqual(de.normalize_instant(CloudTimestamp()), at(9, 0))

    def test_validate_schedule(self):
        self.assertEqual(de.validate_schedule(["20:00", "08:00"], 3), [TimeOfDay(8, 0), TimeOfDay(20, 0)])
        with self.assertRaises(InvalidSchedule):
            de.validate_schedule([], 3)
        with self.assertRaises(InvalidSchedule):
            de.validate_schedule(["06:00", "08:00", "10:00", "12:00", "14:00", "16:00"], 3)
        with self.assertRaises(InvalidSchedule):
            de.validate_schedule(["08:00", "08:00"], 3)
        with self.assertRaises(InvalidSchedule):
            de.validate_schedule(["08:00"], 0)


class TestPlanner(unittest.TestCase):
    def test_skips_todays_past_slots(self):
        now = at(21, 0)
        trig = de.plan_triggers(["08:00", "20:00"], 3, now, "Amoxicillin")
        self.assertEqual([t.when for t in trig], [
            at(8, 0, day=date(2026, 3, 11)), at(20, 0, day=date(2026, 3, 11)),
            at(8, 0, day=date(2026, 3, 12)), at(20, 0, day=date(2026, 3, 12)),
        ])
        self.assertEqual([t.day_offset for t in trig], [1, 1, 2, 2])

    def test_single_day_all_past_is_empty(self):
        sched = FakeScheduler()
        res = de.schedule_medicine(sched, ["08:00", "20:00"], 1, at(21, 0), "Amoxicillin")
        self.assertEqual(res.handles, [])
        self.assertEqual(res.failures, 0)
        self.assertEqual(sched.live, {})

    def test_slot_at_now_is_kept(self):
        trig = de.plan_triggers(["09:00"], 1, at(9, 0), "Ibuprofen")
        self.assertEqual(len(trig), 1)

    def test_days_follow_calendar_dates(self):
        trig = de.plan_triggers(["00:15"], 2, at(23, 30), "Melatonin")
        self.assertEqual([t.when for t in trig], [at(0, 15, day=date(2026, 3, 11))])

    def test_payload(self):
        trig = de.plan_triggers(["09:00"], 1, at(8, 0), "Ibuprofen", dosage="200 mg",
                                user_name="Sam Rivera", medicine_id=7)[0]
        self.assertEqual(trig.title, "Sam, time for Ibuprofen")
        self.assertIn("200 mg", trig.body)
        self.assertEqual(trig.data["medicine_id"], 7)
        self.assertEqual(trig.data["dose_time"], "09:00")
        self.assertEqual(de.plan_triggers(["09:00"], 1, at(8, 0), "Ibuprofen")[0].title, "Time for Ibuprofen")

    def test_failed_slot_does_not_abort_batch(self):
        sched = FakeScheduler(fail_at={at(20, 0, day=date(2026, 3, 11))})
        res = de.schedule_medicine(sched, ["08:00", "20:00"], 3, at(21, 0), "Amoxicillin")
        self.assertEqual(res.failures, 1)
        self.assertEqual(len(res.handles), 3)
        for trig, handle in res.scheduled:
            self.assertEqual(sched.live[handle][0], trig.when)

    def test_async_planner_pairs_handles(self):
        sched = AsyncFakeScheduler(fail_at={at(8, 0, day=date(2026, 3, 11))})
        res = _run(de.schedule_medicine_async(sched, ["08:00", "20:00"], 3, at(21, 0), "Amoxicillin"))
        self.assertEqual(res.failures, 1)
        self.assertEqual(len(res.scheduled), 3)
        for trig, handle in res.scheduled:
            self.assertEqual(sched.live[handle][0], trig.when)

    def test_cancel_tolerates_invalid_handles(self):
        sched = FakeScheduler()
        res = de.schedule_medicine(sched, ["08:00", "20:00"], 2, at(7, 0), "Amoxicillin")
        handles = res.handles[:2] + ["gone", "explode"] + res.handles[2:]
        out = de.cancel_handles(sched, handles)
        self.assertEqual(out.cancelled, 4)
        self.assertEqual(out.ignored, 2)
        self.assertEqual(sched.live, {})

    def test_appointment_trigger(self):
        trig = de.plan_appointment_trigger(at(15, 0), "Dr. Okafor", at(9, 0), location="Clinic B")
        self.assertEqual(trig.when, at(14, 0))
        self.assertEqual(trig.data["type"], "appointment")
        self.assertIsNone(de.plan_appointment_trigger(at(9, 30), "Dr. Okafor", at(9, 0)))


class TestEvaluator(unittest.TestCase):
    def test_single_slot_timeline(self):
        st = de.evaluate_dose_status(["09:00"], [], at(8, 30))
        self.assertEqual(st.status, DoseStatus.AVAILABLE)
        self.assertEqual(st.time_until_dose, 30)

        self.assertEqual(de.evaluate_dose_status(["09:00"], [], at(9, 5)).status, DoseStatus.DUE)
        self.assertEqual(de.evaluate_dose_status(["09:00"], [], at(10, 5)).status, DoseStatus.COMPLETED)
        self.assertEqual(de.evaluate_dose_status(["09:00"], [], at(7, 0)).status, DoseStatus.NEXT)

    def test_missed_slot_moves_to_next(self):
        st = de.evaluate_dose_status(["09:00", "21:00"], [], at(10, 5))
        self.assertEqual(st.status, DoseStatus.NEXT)
        self.assertEqual(st.dose_time, at(21, 0))

    def test_taken_event_dedups_slot(self):
        taken = [at(9, 10), at(9, 11)]
        self.assertEqual(de.evaluate_dose_status(["09:00"], taken, at(9, 30)).status, DoseStatus.COMPLETED)
        st = de.evaluate_dose_status(["09:00", "21:00"], taken, at(9, 30))
        self.assertEqual(st.status, DoseStatus.NEXT)
        self.assertEqual(st.dose_time, at(21, 0))

    def test_window_start_is_inclusive(self):
        st = de.evaluate_dose_status(["07:00", "13:00", "19:00"], [], at(7, 0))
        self.assertEqual(st.status, DoseStatus.DUE)
        self.assertEqual(st.dose_time, at(7, 0))
        self.assertEqual(de.evaluate_dose_status(["09:00"], [], at(10, 0)).status, DoseStatus.DUE)

    def test_minutes_round_up(self):
        st = de.evaluate_dose_status(["09:00"], [], at(8, 59, 30))
        self.assertEqual(st.status, DoseStatus.AVAILABLE)
        self.assertEqual(st.time_until_dose, 1)

    def test_deterministic(self):
        args = (["13:00", "07:00", "19:00"], [at(7, 20), "junk"], at(12, 10))
        self.assertEqual(de.evaluate_dose_status(*args), de.evaluate_dose_status(*args))

    def test_missing_schedule_is_error(self):
        self.assertEqual(de.evaluate_dose_status(None, [], at(9, 0)).status, DoseStatus.ERROR)
        self.assertEqual(de.evaluate_dose_status([], [], at(9, 0)).status, DoseStatus.ERROR)
        self.assertEqual(de.evaluate_dose_status(["bogus"], [], at(9, 0)).status, DoseStatus.ERROR)

    def test_malformed_taken_events_are_dropped(self):
        st = de.evaluate_dose_status(["09:00"], ["not a date", None, at(9, 2)], at(9, 20))
        self.assertEqual(st.status, DoseStatus.COMPLETED)

    def test_taken_early_still_reports_slot_as_next(self):
        st = de.evaluate_dose_status(["09:00", "21:00"], [at(8, 40)], at(8, 45))
        self.assertEqual(st.status, DoseStatus.NEXT)
        self.assertEqual(st.dose_time, at(9, 0))
        self.assertEqual(st.time_until_dose, 15)

        st = de.evaluate_dose_status(["09:00"], [at(8, 40)], at(8, 45))
        self.assertEqual(st.status, DoseStatus.NEXT)
        self.assertEqual(st.dose_time, at(9, 0))

        # once the slot time has passed, the taken slot is resolved
        st = de.evaluate_dose_status(["09:00", "21:00"], [at(8, 40)], at(9, 5))
        self.assertEqual(st.dose_time, at(21, 0))

    def test_close_slots_each_need_their_own_event(self):
        st = de.evaluate_dose_status(["08:00", "09:00"], [at(8, 50)], at(9, 5))
        self.assertEqual(st.status, DoseStatus.DUE)
        self.assertEqual(st.dose_time, at(9, 0))

    def test_aware_now_with_utc_events(self):
        tz = timezone(timedelta(hours=2))
        now = datetime(2026, 3, 10, 9, 30, tzinfo=tz)
        st = de.evaluate_dose_status(["09:00"], ["2026-03-10T07:05:00Z"], now)
        self.assertEqual(st.status, DoseStatus.COMPLETED)

    def test_ignores_course_length(self):
        rec = {"id": 1, "name": "Old", "times": ["09:00"], "duration_days": 1,
               "created_at": at(8, 0, day=date(2026, 1, 1)), "taken_events": []}
        ms = de.evaluate_medicine(rec, at(9, 5))
        self.assertEqual(ms.state.status, DoseStatus.DUE)
        self.assertTrue(ms.course.finished)


class TestCourse(unittest.TestCase):
    def test_progress_labels(self):
        created = at(10, 0, day=date(2026, 3, 1))
        self.assertEqual(de.course_progress(created, 10, at(9, 0, day=date(2026, 3, 9))).label, "2 days remaining")
        self.assertEqual(de.course_progress(created, 10, at(9, 0, day=date(2026, 3, 10))).label, "1 day remaining")
        self.assertEqual(de.course_progress(created, 10, at(9, 0, day=date(2026, 3, 11))).label, "Last day")
        done = de.course_progress(created, 10, at(9, 0, day=date(2026, 3, 12)))
        self.assertTrue(done.finished)
        self.assertEqual(done.label, "Course finished")
        self.assertIsNone(de.course_progress(None, 10, at(9, 0)))

    def test_remaining_doses(self):
        self.assertEqual(de.remaining_doses(10, [at(8, 0), at(20, 0)]), 8)
        self.assertEqual(de.remaining_doses(1, [at(8, 0), at(20, 0)]), 0)
        self.assertIsNone(de.remaining_doses(None, []))

    def test_dashboard_prefers_actionable(self):
        meds = [
            {"id": 1, "name": "Later", "times": ["12:00"]},
            {"id": 2, "name": "Now", "times": ["09:00"]},
            {"id": 3, "name": "Broken", "times": []},
        ]
        self.assertEqual(de.pick_dashboard_dose(meds, at(9, 10)).medicine_id, 2)
        self.assertEqual(de.pick_dashboard_dose(meds, at(10, 30)).medicine_id, 1)
        self.assertIsNone(de.pick_dashboard_dose(meds, at(13, 30)))


class _TempStore(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        td = Path(self._td.name)
        self._old = (m.DB_PATH, m.TMP_DIR, m.KEY_PATH, m.SIM_ALARMS_PATH)
        m.DB_PATH = td / "medicines.db.aes"
        m.KEY_PATH = td / ".enc_key"
        m.TMP_DIR = td / "tmp"
        m.TMP_DIR.mkdir(parents=True, exist_ok=True)
        m.SIM_ALARMS_PATH = td / "simulated_alarms.json"
        self.db = m.MedicineDB(m.get_or_create_key())
        self.now = at(21, 30)
        self.sched = FakeScheduler()
        self.ctl = m.ReminderController(self.db, self.sched, clock=lambda: self.now)

    def tearDown(self):
        m.DB_PATH, m.TMP_DIR, m.KEY_PATH, m.SIM_ALARMS_PATH = self._old
        self._td.cleanup()


class TestCrypto(unittest.TestCase):
    def test_aesgcm_roundtrip(self):
        key = AESGCM.generate_key(bit_length=256)
        pt = os.urandom(1024 * 64)
        self.assertEqual(m.aes_decrypt(m.aes_encrypt(pt, key), key), pt)

    def test_ring_log_trims(self):
        ring = m._RingLog(max_lines=3)
        for i in range(5):
            ring.add(f"line {i}")
        self.assertEqual(ring.text(), "line 2\nline 3\nline 4")


class TestDB(_TempStore):
    def test_record_roundtrip_and_append_only_log(self):
        med_id = self.db.add_medicine("Metformin", ["08:00", "20:00"], 30, dosage="500 mg",
                                      quantity=60, created_at=self.now)
        self.db.append_taken_event(med_id, at(8, 5))
        self.db.append_taken_event(med_id, at(8, 6))
        rec = self.db.get_medicine(med_id)
        self.assertEqual(rec.times, ["08:00", "20:00"])
        self.assertEqual(rec.taken_events, [at(8, 5), at(8, 6)])
        self.assertEqual(rec.quantity, 60)
        self.assertEqual(self.db.get_taken_log()[0]["medicine_name"], "Metformin")

    def test_unknown_id(self):
        with self.assertRaises(m.MedicineNotFound):
            self.db.get_medicine(404)
        with self.assertRaises(m.MedicineNotFound):
            self.db.append_taken_event(404, self.now)

    def test_file_is_encrypted(self):
        self.db.add_medicine("Metformin", ["08:00"], 3)
        self.assertNotIn(b"Metformin", m.DB_PATH.read_bytes())


class TestController(_TempStore):
    def test_create_persists_handles(self):
        rec, res = self.ctl.create_medicine("Amoxicillin", ["20:00", "08:00"], 3, dosage="500 mg")
        self.assertEqual(len(res.handles), 4)
        self.assertEqual(self.db.get_medicine(rec.id).notification_handles, res.handles)
        self.assertEqual(self.db.get_medicine(rec.id).times, ["08:00", "20:00"])

    def test_create_rejects_bad_schedule(self):
        with self.assertRaises(InvalidSchedule):
            self.ctl.create_medicine("Amoxicillin", ["08:00"], 0)
        self.assertEqual(self.db.get_medicines(), [])

    def test_mark_taken_updates_status(self):
        rec, _ = self.ctl.create_medicine("Amoxicillin", ["08:00", "20:00"], 3)
        self.now = at(8, 10, day=date(2026, 3, 11))
        self.assertEqual(self.ctl.status(rec.id).state.status, DoseStatus.DUE)
        self.ctl.mark_taken(rec.id)
        st = self.ctl.status(rec.id).state
        self.assertEqual(st.status, DoseStatus.NEXT)
        self.assertEqual(st.dose_time, at(20, 0, day=date(2026, 3, 11)))

    def test_edit_replans_remaining_course(self):
        rec, res = self.ctl.create_medicine("Amoxicillin", ["08:00", "20:00"], 3)
        self.now = at(7, 0, day=date(2026, 3, 11))
        new = self.ctl.edit_medicine(rec.id, times=["09:00"])
        self.assertEqual(sorted(self.sched.cancelled), sorted(res.handles))
        self.assertEqual([t.when for t, _ in new.scheduled], [
            at(9, 0, day=date(2026, 3, 11)), at(9, 0, day=date(2026, 3, 12)),
        ])
        self.assertEqual(self.db.get_medicine(rec.id).notification_handles, new.handles)

    def test_rejected_edit_keeps_reminders(self):
        rec, res = self.ctl.create_medicine("Amoxicillin", ["08:00", "20:00"], 3)
        with self.assertRaises(ValueError):
            self.ctl.edit_medicine(rec.id, notes="with food")
        with self.assertRaises(InvalidSchedule):
            self.ctl.edit_medicine(rec.id, name="   ")
        with self.assertRaises(InvalidSchedule):
            self.ctl.edit_medicine(rec.id, times=["08:00", "08:00"])
        stored = self.db.get_medicine(rec.id)
        self.assertEqual(stored.name, "Amoxicillin")
        self.assertEqual(stored.notification_handles, res.handles)
        self.assertEqual(sorted(self.sched.live), sorted(res.handles))
        self.assertEqual(self.sched.cancelled, [])

    def test_failed_replan_clears_stored_handles(self):
        rec, res = self.ctl.create_medicine("Amoxicillin", ["08:00", "20:00"], 3)
        real_set = self.db.set_notification_handles
        calls = []

        def flaky_set(med_id, handles):
            calls.append(list(handles))
            if len(calls) == 1:
                raise OSError("disk full")
            real_set(med_id, handles)

        self.db.set_notification_handles = flaky_set
        with self.assertRaises(OSError):
            self.ctl.edit_medicine(rec.id, times=["09:00"])
        self.assertEqual(calls[-1], [])
        self.assertEqual(self.db.get_medicine(rec.id).notification_handles, [])
        self.assertEqual(self.sched.live, {})

    def test_delete_cancels_before_removing(self):
        rec, res = self.ctl.create_medicine("Amoxicillin", ["08:00", "20:00"], 3)
        out = self.ctl.delete_medicine(rec.id)
        self.assertEqual(out.cancelled, 4)
        self.assertEqual(self.sched.live, {})
        with self.assertRaises(m.MedicineNotFound):
            self.db.get_medicine(rec.id)

    def test_dashboard(self):
        self.ctl.create_medicine("Evening", ["20:00"], 3)
        self.ctl.create_medicine("Noon", ["12:00"], 3)
        self.now = at(11, 30, day=date(2026, 3, 11))
        self.assertEqual(self.ctl.dashboard().name, "Noon")


class TestAndroidAlarmDesktop(unittest.TestCase):
    def test_simulated_registry(self):
        alarm = m.AndroidAlarm()
        h = alarm.create(at(9, 0), {"title": "Time for X", "data": {"medicine_id": 3}})
        self.assertEqual(h, m.stable_alarm_request_code(3, at(9, 0)))
        self.assertIn(h, alarm.pending())
        self.assertTrue(alarm.cancel(h))
        self.assertFalse(alarm.cancel(h))
        self.assertFalse(alarm.cancel("not-a-code"))


class TestService(_TempStore):
    def test_due_fires_once(self):
        sent = []
        rec, _ = self.ctl.create_medicine("Amoxicillin", ["08:00", "20:00"], 3, dosage="500 mg")
        svc = ReminderService(self.db, notifier=lambda title, text: sent.append((title, text)),
                              clock=lambda: self.now)
        self.now = at(8, 5, day=date(2026, 3, 11))
        self.assertEqual(svc.tick(), [(rec.id, "2026-03-11 08:00")])
        self.assertEqual(svc.tick(), [])
        self.assertEqual(sent, [("Time for Amoxicillin", "Amoxicillin • 500 mg @ 08:00")])

        self.ctl.mark_taken(rec.id)
        self.now = at(20, 0, day=date(2026, 3, 11))
        self.assertEqual(len(svc.tick()), 1)


class TestCLI(_TempStore):
    def _cli(self, *argv, scheduler="fake"):
        out, err = io.StringIO(), io.StringIO()
        if scheduler == "fake":
            scheduler = self.sched
        with redirect_stdout(out), redirect_stderr(err):
            code = m.main(list(argv), scheduler=scheduler, clock=lambda: self.now)
        return code, out.getvalue(), err.getvalue()

    def test_add_list_take_delete(self):
        code, out, _ = self._cli("add", "Amoxicillin", "--time", "08:00", "--time", "20:00", "--days", "3")
        self.assertEqual(code, 0)
        self.assertIn("4 reminders scheduled", out)

        self.now = at(8, 10, day=date(2026, 3, 11))
        code, out, _ = self._cli("list")
        self.assertIn("DUE now (08:00)", out)

        self.assertEqual(self._cli("take", "1")[0], 0)
        self.assertIn("next dose at 20:00", self._cli("list")[1])
        self.assertIn("4 reminders cancelled", self._cli("delete", "1")[1])

    def test_desktop_delete_in_later_run_cancels_alarms(self):
        self.assertEqual(self._cli("add", "Amoxicillin", "--time", "08:00", "--time", "20:00",
                                   "--days", "3", scheduler=None)[0], 0)
        self.assertEqual(len(m.AndroidAlarm(m.SIM_ALARMS_PATH).pending()), 4)
        self.assertIn("4 reminders cancelled", self._cli("delete", "1", scheduler=None)[1])
        self.assertEqual(m.AndroidAlarm(m.SIM_ALARMS_PATH).pending(), {})

    def test_errors_exit_non_zero(self):
        self.assertEqual(self._cli("take", "99")[0], 1)
        self.assertEqual(self._cli("add", "X", "--time", "25:00", "--days", "1")[0], 2)


if __name__ == "__main__":
    unittest.main(verbosity=2)
