import threading
import unittest
from unittest import mock

import numpy as np

from audio_fixtures import SAMPLE_RATE, TempDatabaseTestCase, insert_track, make_fingerprint, tone_sequence, wav_bytes
from database import db
from decoder import DecoderConfig
from errors import DecodeError, ExtractionError, FingerprintCancelled, StorageError
from fingerprinting import FingerprintingService
from models import MatchStatus
from store import SQLiteFingerprintStore


class TestFingerprintingService(TempDatabaseTestCase):

    def setUp(self):
        super().setUp()
        self.store = SQLiteFingerprintStore(self.db_path)
        self.service = FingerprintingService(self.store, decoder_config=DecoderConfig(backend="librosa"))
        self.song = wav_bytes(tone_sequence(42))

    def test_generate_fingerprint(self):
        fp = self.service.generate_fingerprint(self.song)
        self.assertGreater(len(fp.landmarks), 0)
        self.assertEqual(fp.sample_rate, SAMPLE_RATE)
        self.assertAlmostEqual(fp.duration_s, 3.0, places=2)

    def test_generate_fingerprint_rejects_garbage(self):
        with self.assertRaises(DecodeError):
            self.service.generate_fingerprint(b"\x00\x01garbage" * 100)

    def test_generate_fingerprint_rejects_silence(self):
        with self.assertRaises(ExtractionError):
            self.service.generate_fingerprint(wav_bytes(np.zeros(SAMPLE_RATE * 2, dtype=np.int16)))

    def test_empty_library_has_no_duplicates(self):
        fp = self.service.generate_fingerprint(self.song)
        result = self.service.check_for_duplicates(fp)
        self.assertEqual(result.matches, [])
        self.assertEqual(result.threshold, 80.0)

    def test_identical_upload_is_a_full_match(self):
        insert_track(self.db_path, "orig", title="First Light", artist="Night Shift")
        fp = self.service.generate_fingerprint(self.song)
        self.service.store_fingerprint("orig", fp)

        again = self.service.generate_fingerprint(self.song)
        result = self.service.check_for_duplicates(again)
        self.assertEqual(len(result.matches), 1)
        match = result.matches[0]
        self.assertEqual(match.track_id, "orig")
        self.assertEqual(match.title, "First Light")
        self.assertEqual(match.artist, "Night Shift")
        self.assertEqual(match.similarity, 100.0)
        self.assertEqual(match.matching_landmarks, len(fp.landmarks))

    def test_different_song_is_not_a_match(self):
        insert_track(self.db_path, "orig")
        self.service.store_fingerprint("orig", self.service.generate_fingerprint(self.song))

        other = self.service.generate_fingerprint(wav_bytes(tone_sequence(7)))
        self.assertEqual(self.service.check_for_duplicates(other).matches, [])
        self.assertEqual(len(self.service.check_for_duplicates(other, threshold=0).matches), 1)

    def test_check_survives_store_failure(self):
        fp = make_fingerprint([(0, 1, 1)])
        with mock.patch.object(self.store, "get_all_fingerprints", side_effect=StorageError("disk on fire")):
            result = self.service.check_for_duplicates(fp, threshold=50)
        self.assertEqual(result.matches, [])
        self.assertEqual(result.threshold, 50)

    def test_corrupt_stored_row_does_not_hide_matches(self):
        insert_track(self.db_path, "broken")
        insert_track(self.db_path, "good")
        with db(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO fingerprints (track_id, data, landmark_count, duration_s, sample_rate, created_at)
                VALUES ('broken', ?, 1, 1.0, 22050, '2026-01-01T00:00:00+00:00')
                """,
                ('{"landmarks":[[Infinity,1,2]],"duration_s":1.0,"sample_rate":22050}',),
            )
        keys = [(i, 3, 100 + i) for i in range(20)]
        self.service.store_fingerprint("good", make_fingerprint(keys))

        result = self.service.check_for_duplicates(make_fingerprint(keys))
        self.assertEqual([m.track_id for m in result.matches], ["good"])
        self.assertEqual(result.matches[0].similarity, 100.0)

    def test_store_for_unknown_track(self):
        with self.assertRaises(StorageError):
            self.service.store_fingerprint("ghost", make_fingerprint([(0, 1, 1)]))

    def test_store_twice_for_same_track(self):
        insert_track(self.db_path, "orig")
        self.service.store_fingerprint("orig", make_fingerprint([(0, 1, 1)]))
        with self.assertRaises(StorageError):
            self.service.store_fingerprint("orig", make_fingerprint([(0, 1, 2)]))

    def test_store_empty_fingerprint(self):
        insert_track(self.db_path, "orig")
        with self.assertRaises(ValueError):
            self.service.store_fingerprint("orig", make_fingerprint([]))

    def test_stored_fingerprint_reads_back(self):
        insert_track(self.db_path, "orig")
        fp = self.service.generate_fingerprint(self.song)
        self.service.store_fingerprint("orig", fp)
        self.assertEqual(self.store.get_fingerprint("orig"), fp)

    def test_create_duplicate_matches_absorbs_failures(self):
        with mock.patch.object(self.store, "create_match", side_effect=StorageError("locked")):
            created = self.service.create_duplicate_matches(
                "upload", [mock.Mock(track_id="orig", similarity=99.0, matching_landmarks=10)]
            )
        self.assertEqual(created, [])

    def test_process_upload_records_pending_match(self):
        insert_track(self.db_path, "orig")
        insert_track(self.db_path, "upload")
        self.service.process_upload("orig", self.song)

        result = self.service.process_upload("upload", self.song)
        self.assertEqual([m.track_id for m in result.duplicates.matches], ["orig"])
        self.assertEqual(len(result.matches), 1)
        match = result.matches[0]
        self.assertEqual(match.status, MatchStatus.PENDING)
        self.assertEqual(match.original_track_id, "orig")
        self.assertEqual(match.candidate_track_id, "upload")
        self.assertEqual([m.id for m in self.service.matches.pending_matches()], [match.id])
        self.assertIsNotNone(self.store.get_fingerprint("upload"))

    def test_concurrent_identical_uploads_are_flagged(self):
        insert_track(self.db_path, "a")
        insert_track(self.db_path, "b")
        # Both scans start only once both uploads have reached them
        barrier = threading.Barrier(2, timeout=30)
        load_corpus = self.store.get_all_fingerprints

        def synced_load():
            barrier.wait()
            return load_corpus()

        errors = []

        def upload(track_id):
            try:
                self.service.process_upload(track_id, self.song)
            except Exception as e:
                errors.append(e)

        with mock.patch.object(self.store, "get_all_fingerprints", side_effect=synced_load):
            threads = [threading.Thread(target=upload, args=(t,)) for t in ("a", "b")]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=60)

        self.assertEqual(errors, [])
        pending = self.service.matches.pending_matches()
        self.assertGreater(len(pending), 0)
        self.assertTrue(all({m.original_track_id, m.candidate_track_id} == {"a", "b"} for m in pending))

    def test_process_upload_first_track_has_no_matches(self):
        insert_track(self.db_path, "orig")
        result = self.service.process_upload("orig", self.song)
        self.assertEqual(result.matches, [])
        self.assertEqual(self.service.matches.pending_matches(), [])

    def test_process_upload_silence_stores_nothing(self):
        insert_track(self.db_path, "quiet")
        with self.assertRaises(ExtractionError):
            self.service.process_upload("quiet", wav_bytes(np.zeros(SAMPLE_RATE * 2, dtype=np.int16)))
        self.assertIsNone(self.store.get_fingerprint("quiet"))

    def test_process_upload_cancelled(self):
        insert_track(self.db_path, "orig")
        event = threading.Event()
        event.set()
        with self.assertRaises(FingerprintCancelled):
            self.service.process_upload("orig", self.song, cancel_event=event)
        self.assertIsNone(self.store.get_fingerprint("orig"))

    def test_parallel_comparison(self):
        service = FingerprintingService(self.store, decoder_config=DecoderConfig(backend="librosa"), compare_workers=3)
        for i in range(4):
            insert_track(self.db_path, f"t{i}")
            service.store_fingerprint(f"t{i}", service.generate_fingerprint(wav_bytes(tone_sequence(100 + i))))
        fp = service.generate_fingerprint(wav_bytes(tone_sequence(102)))
        self.assertEqual([m.track_id for m in service.check_for_duplicates(fp).matches], ["t2"])


if __name__ == '__main__':
    unittest.main()
