"""
競合検出・解決 テスト
"""

from datetime import datetime, timedelta

import pytest

from dualtab_sync.core.models import (
    ConflictInfo, ConflictKind, ConflictResolution, LocalSnapshot, SyncDataPackage,
)
from dualtab_sync.layers.sync_layer.conflict_resolver import ConflictDetector

BASE_TIME = datetime(2024, 3, 1, 9, 0)


def package(bookmarks=None, modified_at=BASE_TIME, settings=None, categories=None) -> SyncDataPackage:
    return SyncDataPackage.from_snapshot(LocalSnapshot(
        bookmarks=bookmarks or [], categories=categories or [], settings=settings or {},
        modified_at=modified_at,
    ))


@pytest.fixture
def detector():
    return ConflictDetector()


class TestConflictDetection:
    """競合検出のテスト"""

    def test_remote_missing_uses_local(self, detector):
        result = detector.detect(package([{'id': 'l1'}]), None)

        assert result.should_use_local
        assert not result.has_conflict

    def test_untouched_empty_local_uses_remote(self, detector):
        result = detector.detect(package(modified_at=None), package([{'id': 'r1'}]))

        assert result.should_use_remote

    def test_untouched_empty_local_with_corrupt_remote(self, detector):
        """空ローカルで壊れたリモートはハッシュ不一致の競合"""
        remote = package([{'id': 'r1'}])
        remote.metadata.data_hash = "broken"

        result = detector.detect(package(modified_at=None), remote)

        assert result.has_conflict
        assert result.conflict_info.kind == ConflictKind.HASH_MISMATCH

    def test_corrupt_remote_keeps_local(self, detector):
        remote = package([{'id': 'r1'}])
        remote.metadata.data_hash = "broken"

        result = detector.detect(package([{'id': 'l1'}]), remote)

        assert result.should_use_local

    def test_identical_data_is_up_to_date(self, detector):
        result = detector.detect(package([{'id': 'b1'}]), package([{'id': 'b1'}], BASE_TIME - timedelta(days=1)))

        assert result.is_up_to_date

    def test_newer_side_wins(self, detector):
        newer_local = detector.detect(package([{'id': 'l1'}], BASE_TIME + timedelta(minutes=1)),
                                      package([{'id': 'r1'}]))
        newer_remote = detector.detect(package([{'id': 'l1'}]),
                                       package([{'id': 'r1'}], BASE_TIME + timedelta(minutes=1)))

        assert newer_local.should_use_local
        assert newer_remote.should_use_remote

    def test_missing_timestamp_is_conflict(self, detector):
        result = detector.detect(package([{'id': 'l1'}]), package([{'id': 'r1'}], modified_at=None))

        assert result.has_conflict
        assert result.conflict_info.kind == ConflictKind.TIMESTAMP_CONFLICT

    def test_same_timestamp_different_data(self, detector):
        """同時刻で内容が異なる場合はデータ競合"""
        result = detector.detect(package([{'id': 'l1'}]), package([{'id': 'r1'}]))

        assert result.has_conflict
        info = result.conflict_info
        assert info.kind == ConflictKind.DATA_CONFLICT
        assert info.local_timestamp == BASE_TIME
        assert info.remote_data['bookmarks'] == [{'id': 'r1'}]
        assert detector.get_statistics()['conflicts_detected'] == 1


class TestConflictResolution:
    """競合解決のテスト"""

    def test_recommendation(self, detector):
        def info(kind, local, remote):
            return ConflictInfo(kind=kind, local_data={'bookmarks': local}, remote_data={'bookmarks': remote})

        assert detector.recommend_resolution(info(ConflictKind.HASH_MISMATCH, [1], [2])) == \
            ConflictResolution.MANUAL
        assert detector.recommend_resolution(info(ConflictKind.HASH_MISMATCH, [], [1, 2])) == \
            ConflictResolution.MANUAL
        assert detector.recommend_resolution(info(ConflictKind.DATA_CONFLICT, [], [2])) == \
            ConflictResolution.USE_REMOTE
        assert detector.recommend_resolution(info(ConflictKind.DATA_CONFLICT, [1], [])) == \
            ConflictResolution.USE_LOCAL
        assert detector.recommend_resolution(info(ConflictKind.DATA_CONFLICT, [1, 2, 3], [1])) == \
            ConflictResolution.USE_LOCAL
        assert detector.recommend_resolution(info(ConflictKind.DATA_CONFLICT, [1, 2], [1])) == \
            ConflictResolution.MERGE
        assert detector.recommend_resolution(info(ConflictKind.TIMESTAMP_CONFLICT, [1], [2])) == \
            ConflictResolution.MERGE

    def test_timestamp_conflict_prefers_newer_side(self, detector):
        conflict = ConflictInfo(kind=ConflictKind.TIMESTAMP_CONFLICT,
                                local_data={'bookmarks': [1]}, remote_data={'bookmarks': [2]},
                                local_timestamp=BASE_TIME, remote_timestamp=BASE_TIME + timedelta(minutes=1))

        assert detector.recommend_resolution(conflict) == ConflictResolution.USE_REMOTE

    def test_empty_local_never_overwrites_corrupted_remote(self, detector):
        """空のローカルとハッシュ不一致のリモートは自動解決しない"""
        remote = package([{'id': 'r1'}, {'id': 'r2'}])
        remote.metadata.data_hash = "written-by-other-client"

        result = detector.detect(package(modified_at=None), remote)
        assert result.conflict_info.kind == ConflictKind.HASH_MISMATCH

        resolution = detector.recommend_resolution(result.conflict_info)
        assert resolution == ConflictResolution.MANUAL
        assert detector.resolve(resolution, package(modified_at=None), remote) is None

    def test_manual_resolution_returns_nothing(self, detector):
        assert detector.resolve(ConflictResolution.MANUAL, package([{'id': 'l1'}]), package([{'id': 'r1'}])) is None
        assert detector.get_statistics()['manual_reviews_required'] == 1

    def test_use_local_and_remote(self, detector):
        local, remote = package([{'id': 'l1'}]), package([{'id': 'r1'}])

        assert detector.resolve(ConflictResolution.USE_LOCAL, local, remote) is local
        assert detector.resolve(ConflictResolution.USE_REMOTE, local, remote) is remote
        assert detector.get_statistics()['conflicts_resolved'] == 2

    def test_merge_prefers_newer_side(self, detector):
        """マージはID単位の和集合で新しい側の項目と設定を採用"""
        local = package([{'id': 'a', 'title': "old"}, {'id': 'l1'}], settings={'theme': 'light'},
                        categories=[{'id': 'c1'}])
        remote = package([{'id': 'a', 'title': "new"}, {'id': 'r1'}], BASE_TIME + timedelta(hours=1),
                         settings={'theme': 'dark'}, categories=[{'id': 'c2'}])

        merged = detector.resolve(ConflictResolution.MERGE, local, remote, device_id="device_test")

        assert merged.bookmarks == [{'id': 'a', 'title': "new"}, {'id': 'r1'}, {'id': 'l1'}]
        assert merged.categories == [{'id': 'c2'}, {'id': 'c1'}]
        assert merged.settings == {'theme': 'dark'}
        assert merged.metadata.device_id == "device_test"
        assert merged.is_intact()

    def test_merge_items_without_ids(self, detector):
        merged = detector.merge(package(["x", "y"]), package(["y", "z"]))

        assert merged.bookmarks == ["x", "y", "z"]
