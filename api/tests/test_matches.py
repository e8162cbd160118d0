import unittest

from audio_fixtures import TempDatabaseTestCase, insert_track
from errors import NotFoundError, StorageError
from matches import DuplicateMatchManager
from models import DuplicateCandidate, MatchStatus
from store import SQLiteFingerprintStore


def _candidate(track_id, similarity=92.5, matching=120):
    return DuplicateCandidate(
        track_id=track_id, title="Original", artist="Band", similarity=similarity, matching_landmarks=matching
    )


class TestDuplicateMatchManager(TempDatabaseTestCase):

    def setUp(self):
        super().setUp()
        for track_id in ("orig", "orig2", "upload"):
            insert_track(self.db_path, track_id)
        self.store = SQLiteFingerprintStore(self.db_path)
        self.manager = DuplicateMatchManager(self.store)

    def test_created_matches_are_pending(self):
        created = self.manager.create_matches("upload", [_candidate("orig")])
        self.assertEqual(len(created), 1)
        match = self.manager.get(created[0].id)
        self.assertEqual(match.status, MatchStatus.PENDING)
        self.assertEqual(match.original_track_id, "orig")
        self.assertEqual(match.candidate_track_id, "upload")
        self.assertEqual(match.similarity, 92.5)
        self.assertEqual(match.matching_landmarks, 120)
        self.assertIsNone(match.reviewer_id)
        self.assertIsNone(match.reviewed_at)

    def test_confirm_duplicate(self):
        [match] = self.manager.create_matches("upload", [_candidate("orig")])
        reviewed = self.manager.review(match.id, MatchStatus.CONFIRMED_DUPLICATE, "admin-1")
        self.assertEqual(reviewed.status, MatchStatus.CONFIRMED_DUPLICATE)
        self.assertEqual(reviewed.reviewer_id, "admin-1")
        self.assertIsNotNone(reviewed.reviewed_at)
        self.assertEqual(self.manager.pending_matches(), [])

    def test_false_positive_keeps_note(self):
        [match] = self.manager.create_matches("upload", [_candidate("orig")])
        reviewed = self.manager.review(match.id, "FALSE_POSITIVE", "admin-2", note="different song, same sample")
        self.assertEqual(reviewed.status, MatchStatus.FALSE_POSITIVE)
        self.assertEqual(self.manager.get(match.id).resolution_note, "different song, same sample")

    def test_remix(self):
        [match] = self.manager.create_matches("upload", [_candidate("orig")])
        self.assertEqual(self.manager.review(match.id, MatchStatus.REMIX, "admin").status, MatchStatus.REMIX)

    def test_re_review_overwrites(self):
        [match] = self.manager.create_matches("upload", [_candidate("orig")])
        self.manager.review(match.id, MatchStatus.CONFIRMED_DUPLICATE, "admin-1")
        reviewed = self.manager.review(match.id, MatchStatus.FALSE_POSITIVE, "admin-2", note="changed my mind")
        self.assertEqual(reviewed.status, MatchStatus.FALSE_POSITIVE)
        self.assertEqual(reviewed.reviewer_id, "admin-2")
        self.assertEqual(reviewed.resolution_note, "changed my mind")

    def test_review_rejects_pending_and_unknown_status(self):
        [match] = self.manager.create_matches("upload", [_candidate("orig")])
        with self.assertRaises(ValueError):
            self.manager.review(match.id, MatchStatus.PENDING, "admin")
        with self.assertRaises(ValueError):
            self.manager.review(match.id, "MAYBE", "admin")
        self.assertEqual(self.manager.get(match.id).status, MatchStatus.PENDING)

    def test_review_unknown_match(self):
        with self.assertRaises(NotFoundError):
            self.manager.review("no-such-match", MatchStatus.REMIX, "admin")
        with self.assertRaises(NotFoundError):
            self.manager.get("no-such-match")

    def test_matches_for_track_from_either_side(self):
        self.manager.create_matches("upload", [_candidate("orig"), _candidate("orig2", similarity=85.0)])
        self.assertEqual(len(self.manager.matches_for_track("upload")), 2)
        self.assertEqual([m.candidate_track_id for m in self.manager.matches_for_track("orig")], ["upload"])

    def test_matches_for_unknown_track(self):
        with self.assertRaises(NotFoundError):
            self.manager.matches_for_track("ghost")

    def test_matches_for_track_without_matches(self):
        self.assertEqual(self.manager.matches_for_track("orig2"), [])

    def test_pending_newest_first(self):
        [first] = self.manager.create_matches("upload", [_candidate("orig")])
        [second] = self.manager.create_matches("upload", [_candidate("orig2")])
        self.assertEqual([m.id for m in self.manager.pending_matches()], [second.id, first.id])

    def test_match_ids_unique(self):
        created = self.manager.create_matches("upload", [_candidate("orig"), _candidate("orig2")])
        self.assertEqual(len({m.id for m in created}), 2)


class TestStoreFailures(TempDatabaseTestCase):
    """A store pointed at a database without the schema fails every call with StorageError."""

    def setUp(self):
        super().setUp()
        self.store = SQLiteFingerprintStore(f"{self.tmp_dir}/no-schema.db")
        self.manager = DuplicateMatchManager(self.store)

    def test_reads_raise_storage_error(self):
        for call in (
            self.store.get_all_fingerprints,
            self.store.find_pending_matches,
            lambda: self.store.get_match("m1"),
            lambda: self.store.get_fingerprint("t1"),
            lambda: self.store.track_exists("t1"),
            lambda: self.store.find_matches_for_track("t1"),
        ):
            with self.assertRaises(StorageError):
                call()

    def test_review_raises_storage_error(self):
        with self.assertRaises(StorageError):
            self.manager.review("m1", MatchStatus.REMIX, "admin")
        with self.assertRaises(StorageError):
            self.manager.pending_matches()


if __name__ == '__main__':
    unittest.main()
