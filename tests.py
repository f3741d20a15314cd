
import os
import json
import asyncio
import tempfile
import unittest
import importlib.util
from datetime import date, datetime, timedelta
from pathlib import Path

os.environ.setdefault("MEDREMIND_DATA_DIR", tempfile.mkdtemp(prefix="medremind-tests-"))

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag

import medconfig
import medstore as st
from medmodels import DoseHistory, EnrichedDose, HistoryFilter, Medication, SkippedDose
from medhistory import (
    HistoryView, build_history_view, display_color, display_dosage, display_name, enrich_doses,
    filter_doses, format_date_header, group_by_date,
)
from medskip import SkipDoseControl, skip_dose
from medschedule import needs_refill, start_reminder_service, upcoming_doses
from medauth import AUTH_FAILED, Authenticator, valid_pin


def _run(coro):
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop and loop.is_running():
        return asyncio.run_coroutine_threadsafe(coro, loop).result(timeout=30)
    return asyncio.run(coro)


def _med(mid, name="Aspirin", **kw):
    return Medication(id=mid, name=name, dosage=kw.pop("dosage", "1 tablet"), color=kw.pop("color", "#fff"), **kw)


def _dose(did, mid, ts, taken):
    return DoseHistory(id=did, medication_id=mid, timestamp=ts, taken=taken)


class _StoreCase(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.td = Path(self._td.name)
        self.storage = st.MedStorage.open(self.td)

    def tearDown(self):
        self._td.cleanup()

    def put_raw(self, key, value):
        self.storage.store.set_item(key, value if isinstance(value, str) else json.dumps(value))


class FailingStorage:
    async def get_dose_history(self):
        raise st.StorageUnavailable("boom")

    async def get_medications(self):
        raise st.StorageUnavailable("boom")

    async def clear_all_data(self):
        raise st.StorageUnavailable("boom")

    async def append_skipped_dose(self, skip):
        raise st.StorageUnavailable("boom")


class TestCrypto(unittest.TestCase):
    def test_aesgcm_roundtrip(self):
        key = AESGCM.generate_key(bit_length=256)
        pt = os.urandom(1024 * 16)
        self.assertEqual(pt, st.aes_decrypt(st.aes_encrypt(pt, key), key))

    def test_short_ciphertext_rejected(self):
        key = AESGCM.generate_key(bit_length=256)
        with self.assertRaises(InvalidTag):
            st.aes_decrypt(b"short", key)

    def test_load_key_never_creates(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "k"
            self.assertIsNone(st.load_key(path))
            self.assertFalse(path.exists())
            key = st.get_or_create_key(path)
            self.assertEqual(st.load_key(path), key)

    def test_open_existing_needs_key(self):
        with tempfile.TemporaryDirectory() as td:
            td = Path(td)
            self.assertIsNone(st.MedStorage.open_existing(td))
            self.assertFalse((td / medconfig.KEY_PATH.name).exists())
            writer = st.MedStorage.open(td)
            _run(writer.add_medication(_med("m1")))
            reader = st.MedStorage.open_existing(td)
            self.assertEqual([m.id for m in _run(reader.get_medications())], ["m1"])

    def test_key_is_created_once(self):
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / ".enc_key"
            k1 = st.get_or_create_key(p)
            k2 = st.get_or_create_key(p)
            self.assertEqual(len(k1), 32)
            self.assertEqual(k1, k2)


class TestEncryptedStore(_StoreCase):
    def test_missing_file_reads_empty(self):
        self.assertIsNone(self.storage.store.get_item(medconfig.MEDICATIONS_KEY))
        self.assertEqual(self.storage.store.keys(), [])

    def test_file_is_not_plaintext(self):
        self.storage.store.set_item("k", "secret-medication-name")
        self.assertNotIn(b"secret-medication-name", self.storage.store.path.read_bytes())
        self.assertEqual(self.storage.store.get_item("k"), "secret-medication-name")

    def test_wrong_key_is_unavailable(self):
        self.storage.store.set_item("k", "v")
        other = st.EncryptedStore(AESGCM.generate_key(bit_length=256), self.storage.store.path)
        with self.assertRaises(st.StorageUnavailable):
            other.get_item("k")

    def test_corrupted_file_fails_every_read(self):
        self.storage.store.path.write_bytes(os.urandom(64))
        with self.assertRaises(st.StorageUnavailable):
            _run(self.storage.get_medications())
        with self.assertRaises(st.StorageUnavailable):
            _run(self.storage.get_dose_history())

    def test_clear_recovers_corrupted_file(self):
        self.storage.store.path.write_bytes(os.urandom(64))
        _run(self.storage.clear_all_data())
        self.assertEqual(_run(self.storage.get_medications()), [])


class TestStorage(_StoreCase):
    def test_clear_all_empties_every_collection(self):
        async def go():
            await self.storage.add_medication(_med("m1"))
            await self.storage.record_dose("m1", True)
            await skip_dose(self.storage, "m1", "Aspirin", "08:00")
            await self.storage.clear_all_data()
            return (await self.storage.get_medications(), await self.storage.get_dose_history(),
                    await self.storage.get_skipped_doses())

        self.assertEqual(_run(go()), ([], [], []))

    def test_clear_all_is_idempotent(self):
        _run(self.storage.clear_all_data())
        _run(self.storage.clear_all_data())
        self.assertEqual(_run(self.storage.get_dose_history()), [])

    def test_unparseable_collection_reads_empty(self):
        self.put_raw(medconfig.DOSE_HISTORY_KEY, "{not json")
        self.put_raw(medconfig.MEDICATIONS_KEY, {"id": "m1"})
        self.assertEqual(_run(self.storage.get_dose_history()), [])
        self.assertEqual(_run(self.storage.get_medications()), [])

    def test_malformed_records_are_dropped(self):
        self.put_raw(medconfig.DOSE_HISTORY_KEY, [
            {"id": "d1", "medicationId": "m1", "timestamp": "2024-03-01T09:00:00", "taken": True},
            {"id": "d2", "medicationId": "m1"},
            "garbage",
        ])
        hist = _run(self.storage.get_dose_history())
        self.assertEqual([d.id for d in hist], ["d1"])

    def test_persisted_layout_uses_camel_case(self):
        _run(self.storage.record_dose("m9", False, timestamp="2024-03-01T21:00:00"))
        raw = json.loads(self.storage.store.get_item(medconfig.DOSE_HISTORY_KEY))
        self.assertEqual(raw[0]["medicationId"], "m9")
        self.assertIs(raw[0]["taken"], False)

    def test_medication_crud(self):
        async def go():
            med = await self.storage.add_medication(Medication(id="", name="Metformin", dosage="500mg"))
            self.assertTrue(med.id)
            med.dosage = "850mg"
            self.assertTrue(await self.storage.update_medication(med))
            self.assertFalse(await self.storage.update_medication(_med("nope")))
            meds = await self.storage.get_medications()
            self.assertEqual([(m.name, m.dosage) for m in meds], [("Metformin", "850mg")])
            self.assertTrue(await self.storage.delete_medication(med.id))
            self.assertFalse(await self.storage.delete_medication(med.id))
            return await self.storage.get_medications()

        self.assertEqual(_run(go()), [])

    def test_taken_dose_decrements_supply(self):
        async def go():
            await self.storage.add_medication(_med("m1", current_supply=2, total_supply=30))
            await self.storage.record_dose("m1", True)
            await self.storage.record_dose("m1", False)
            await self.storage.record_dose("m1", True)
            await self.storage.record_dose("m1", True)
            return (await self.storage.get_medications())[0].current_supply

        self.assertEqual(_run(go()), 0)

    def test_todays_doses(self):
        now = datetime(2024, 3, 2, 12, 0)

        async def go():
            await self.storage.record_dose("m1", True, timestamp="2024-03-02T08:00:00")
            await self.storage.record_dose("m1", True, timestamp="2024-03-01T23:59:00")
            await self.storage.record_dose("m1", False, timestamp="2024-03-02T20:00:00")
            return await self.storage.get_todays_doses(now=now)

        self.assertEqual([d.timestamp for d in _run(go())], ["2024-03-02T08:00:00", "2024-03-02T20:00:00"])

    def test_concurrent_skips_are_not_lost(self):
        async def go():
            await asyncio.gather(*[skip_dose(self.storage, f"m{i}", "X", "08:00") for i in range(20)])
            return await self.storage.get_skipped_doses()

        skips = _run(go())
        self.assertEqual(len(skips), 20)
        self.assertEqual({s.med_id for s in skips}, {f"m{i}" for i in range(20)})


class TestHistory(unittest.TestCase):
    def setUp(self):
        self.meds = [_med("m1"), _med("m3", name="Ibuprofen", dosage="200mg", color="#f00")]
        self.hist = [
            _dose("d1", "m1", "2024-03-01T09:00:00", True),
            _dose("d2", "m2", "2024-03-01T21:00:00", False),
            _dose("d3", "m3", "2024-03-03T08:00:00", True),
            _dose("d4", "m1", "2024-03-02T08:00:00", False),
            _dose("d5", "m3", "2024-03-01T07:00:00", True),
        ]

    def test_enrichment_is_left_join(self):
        enriched = enrich_doses(self.hist, self.meds)
        self.assertEqual([e.id for e in enriched], [d.id for d in self.hist])
        for e in enriched:
            match = [m for m in self.meds if m.id == e.dose.medication_id]
            self.assertEqual(e.medication, match[0] if match else None)

    def test_duplicate_medication_ids_first_wins(self):
        enriched = enrich_doses(self.hist[:1], [_med("m1", name="First"), _med("m1", name="Second")])
        self.assertEqual(enriched[0].medication.name, "First")

    def test_filter_modes(self):
        enriched = enrich_doses(self.hist, self.meds)
        self.assertEqual(filter_doses(enriched, HistoryFilter.ALL), enriched)
        self.assertEqual([e.id for e in filter_doses(enriched, "taken")], ["d1", "d3", "d5"])
        self.assertEqual([e.id for e in filter_doses(enriched, "missed")], ["d2", "d4"])
        self.assertEqual(filter_doses(enriched, "bogus"), enriched)

    def test_grouping_is_a_partition_newest_first(self):
        enriched = enrich_doses(self.hist, self.meds)
        groups = group_by_date(enriched)
        days = [d for d, _ in groups]
        self.assertEqual(days, [date(2024, 3, 3), date(2024, 3, 2), date(2024, 3, 1)])
        flat = [e.id for _, doses in groups for e in doses]
        self.assertEqual(sorted(flat), sorted(e.id for e in enriched))
        # input order kept inside a day
        self.assertEqual([e.id for e in groups[2][1]], ["d1", "d2", "d5"])

    def test_missed_example(self):
        meds = [_med("m1")]
        hist = [_dose("d1", "m1", "2024-03-01T09:00:00", True), _dose("d2", "m2", "2024-03-01T21:00:00", False)]
        groups = build_history_view(hist, meds, "missed")
        self.assertEqual(len(groups), 1)
        day, doses = groups[0]
        self.assertEqual(day, date(2024, 3, 1))
        self.assertEqual([e.id for e in doses], ["d2"])
        self.assertIsNone(doses[0].medication)
        self.assertEqual(display_name(doses[0]), "Unknown Medication")
        self.assertEqual(display_dosage(doses[0]), "")
        self.assertEqual(display_color(doses[0]), "#ccc")

    def test_bad_timestamp_is_left_out(self):
        hist = [_dose("d1", "m1", "not-a-date", True), _dose("d2", "m1", "2024-03-01T09:00:00Z", True)]
        groups = build_history_view(hist, self.meds)
        self.assertEqual([e.id for _, doses in groups for e in doses], ["d2"])

    def test_date_header(self):
        self.assertEqual(format_date_header(date(2024, 3, 1)), "Friday, March 1")


class TestHistoryView(_StoreCase):
    def test_refresh_rederives_each_time(self):
        view = HistoryView()

        async def go():
            await self.storage.add_medication(_med("m1"))
            await self.storage.record_dose("m1", True, timestamp="2024-03-01T09:00:00")
            await view.refresh(self.storage)
            first = view.count()
            await self.storage.record_dose("m1", False, timestamp="2024-03-02T09:00:00")
            await view.refresh(self.storage)
            return first, view.count()

        self.assertEqual(_run(go()), (1, 2))
        view.set_filter("missed")
        self.assertEqual(view.count(), 1)

    def test_refresh_failure_keeps_previous_data(self):
        view = HistoryView()
        view.history = [_dose("d1", "m1", "2024-03-01T09:00:00", True)]
        self.assertFalse(_run(view.refresh(FailingStorage())))
        self.assertEqual(view.count(), 1)

    def test_clear_all_messages(self):
        view = HistoryView()
        _run(self.storage.record_dose("m1", True))
        ok, msg = _run(view.clear_all(self.storage))
        self.assertTrue(ok)
        self.assertEqual(msg, HistoryView.CLEAR_OK)
        self.assertEqual(view.groups(), [])

        ok, msg = _run(view.clear_all(FailingStorage()))
        self.assertFalse(ok)
        self.assertEqual(msg, HistoryView.CLEAR_FAILED)

    def test_clear_all_drops_old_rows_when_reload_fails(self):
        class ClearsThenFails(FailingStorage):
            async def clear_all_data(self):
                return None

        view = HistoryView()
        view.history = [_dose("d1", "m1", "2024-03-01T09:00:00", True)]
        ok, msg = _run(view.clear_all(ClearsThenFails()))
        self.assertTrue(ok)
        self.assertEqual(msg, HistoryView.CLEAR_OK)
        self.assertEqual(view.count(), 0)


class TestSkipDose(_StoreCase):
    def test_skip_appends_exactly_one(self):
        async def go():
            before = len(await self.storage.get_skipped_doses())
            await skip_dose(self.storage, "m1", "Aspirin", "08:00")
            return before, await self.storage.get_skipped_doses()

        before, after = _run(go())
        self.assertEqual(len(after), before + 1)
        rec = after[-1]
        self.assertEqual((rec.med_id, rec.name, rec.time), ("m1", "Aspirin", "08:00"))
        self.assertTrue(rec.date)

    def test_skip_does_not_touch_history(self):
        _run(self.storage.record_dose("m1", False, timestamp="2024-03-01T08:00:00"))
        _run(skip_dose(self.storage, "m1", "Aspirin", "08:00"))
        hist = _run(self.storage.get_dose_history())
        self.assertEqual([(d.medication_id, d.taken) for d in hist], [("m1", False)])

    def test_repeat_skip_is_not_deduplicated(self):
        _run(skip_dose(self.storage, "m1", "Aspirin", "08:00"))
        _run(skip_dose(self.storage, "m1", "Aspirin", "08:00"))
        self.assertEqual(len(_run(self.storage.get_skipped_doses())), 2)

    def test_unparseable_collection_restarts_from_empty(self):
        self.put_raw(medconfig.SKIPPED_DOSES_KEY, "oops")
        _run(skip_dose(self.storage, "m1", "Aspirin", "08:00"))
        self.assertEqual(len(_run(self.storage.get_skipped_doses())), 1)

    def test_control_state(self):
        ok_ctl = SkipDoseControl(self.storage, "m1", "Aspirin", "08:00")
        self.assertEqual(ok_ctl.label, "Aspirin - 08:00")
        self.assertTrue(_run(ok_ctl.skip()))
        self.assertTrue(ok_ctl.skipped)
        self.assertIsInstance(ok_ctl.last_skip, SkippedDose)

        bad_ctl = SkipDoseControl(FailingStorage(), "m1", "Aspirin", "08:00")
        self.assertFalse(_run(bad_ctl.skip()))
        self.assertFalse(bad_ctl.skipped)
        self.assertEqual(bad_ctl.error, SkipDoseControl.SKIP_FAILED)
        self.assertIsNone(ok_ctl.error)


class TestSchedule(unittest.TestCase):
    def test_upcoming_window(self):
        now = datetime(2024, 3, 1, 10, 0)
        meds = [
            _med("m1", times=["08:00", "12:30", "bad"]),
            _med("m2", name="Off", times=["11:00"], reminder_enabled=False),
        ]
        up = upcoming_doses(meds, now=now, hours=36)
        self.assertEqual([u["time"] for u in up],
                         ["2024-03-01 12:30", "2024-03-02 08:00", "2024-03-02 12:30"])
        self.assertEqual({u["medication_id"] for u in up}, {"m1"})

    def test_just_passed_slot_stays_today_within_grace(self):
        now = datetime(2024, 3, 1, 8, 0, 10)
        med = _med("m1", times=["08:00"])
        self.assertEqual([u["time"] for u in upcoming_doses([med], now=now, hours=3, grace_seconds=20)],
                         ["2024-03-01 08:00"])
        self.assertEqual([u["time"] for u in upcoming_doses([med], now=now, hours=3)], [])
        self.assertEqual([u["time"] for u in upcoming_doses([med], now=now, hours=30)],
                         ["2024-03-02 08:00"])

    def test_needs_refill(self):
        self.assertTrue(needs_refill(_med("m1", refill_reminder=True, current_supply=3, refill_at=5)))
        self.assertFalse(needs_refill(_med("m1", refill_reminder=False, current_supply=3, refill_at=5)))
        self.assertFalse(needs_refill(_med("m1", refill_reminder=True, current_supply=9, refill_at=5)))


class TestAuth(unittest.TestCase):
    def test_pin_set_and_verify(self):
        with tempfile.TemporaryDirectory() as td:
            auth = Authenticator(Path(td) / "pin.json", rounds=1000)
            self.assertFalse(auth.has_pin())
            self.assertFalse(auth.verify_pin("1234").success)
            auth.set_pin("1234")
            self.assertTrue(auth.has_pin())
            self.assertTrue(auth.verify_pin("1234").success)
            res = auth.verify_pin("4321")
            self.assertFalse(res.success)
            self.assertEqual(res.error, AUTH_FAILED)
            self.assertFalse(auth.has_biometrics())
            self.assertEqual(auth.prompt_message(), "Enter your PIN to access medications")

    def test_pin_rules(self):
        self.assertTrue(valid_pin("0000"))
        self.assertFalse(valid_pin("12a4"))
        self.assertFalse(valid_pin("123"))
        self.assertFalse(valid_pin("123456789"))
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ValueError):
                Authenticator(Path(td) / "pin.json", rounds=1000).set_pin("12")


class TestReminderService(unittest.TestCase):
    def _load(self):
        path = Path(__file__).resolve().parent / "service" / "med_service.py"
        spec = importlib.util.spec_from_file_location("med_service", path)
        mod = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(mod)
        return mod

    def test_due_reminders_fire_once(self):
        svc = self._load()
        now = datetime(2024, 3, 1, 8, 0, 0)
        up = upcoming_doses([_med("m1", times=["08:00", "09:00"])], now=now, hours=3)
        fired = {}
        due = svc.due_reminders(up, now, fired, now_ts=1000.0)
        self.assertEqual([u["time_hm"] for u in due], ["08:00"])
        self.assertEqual(svc.due_reminders(up, now, fired, now_ts=1030.0), [])
        self.assertEqual(len(svc.due_reminders(up, now + timedelta(seconds=10), fired, now_ts=1200.0)), 1)

    def test_late_slot_still_fires(self):
        svc = self._load()
        now = datetime(2024, 3, 1, 8, 0, 10)
        up = upcoming_doses([_med("m1", times=["08:00"])], now=now, hours=3, grace_seconds=svc.FIRE_LATE_S)
        due = svc.due_reminders(up, now, {}, now_ts=1000.0)
        self.assertEqual([u["time"] for u in due], ["2024-03-01 08:00"])

    def test_poll_waits_for_app_key(self):
        svc = self._load()
        with tempfile.TemporaryDirectory() as td:
            td = Path(td)
            self.assertIsNone(svc.poll_once(None, {}, base_dir=td))
            self.assertFalse((td / medconfig.KEY_PATH.name).exists())

            st.MedStorage.open(td)
            storage = svc.poll_once(None, {}, base_dir=td)
            self.assertIsInstance(storage, st.MedStorage)

    def test_poll_survives_unexpected_errors(self):
        svc = self._load()

        class Broken:
            async def get_medications(self):
                raise RuntimeError("boom")

        storage = Broken()
        self.assertIs(svc.poll_once(storage, {}), storage)

    def test_service_start_is_noop_off_android(self):
        self.assertFalse(start_reminder_service())


if __name__ == "__main__":
    unittest.main(verbosity=2)
