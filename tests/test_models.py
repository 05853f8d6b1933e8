from __future__ import annotations

import json
from datetime import datetime, timezone

from fakes import EPOCH, make_snapshot
from vitalis.edge.models import (
    DiskInfo,
    MetricBatch,
    Snapshot,
    format_timestamp,
    parse_timestamp,
)


def test_timestamp_is_utc_with_z_suffix():
    assert format_timestamp(EPOCH) == "2024-05-01T12:00:00.000000Z"


def test_naive_timestamp_treated_as_utc():
    assert format_timestamp(datetime(2024, 5, 1, 12, 0)) == "2024-05-01T12:00:00.000000Z"


def test_parse_timestamp_inverts_format():
    ts = datetime(2024, 5, 1, 12, 0, 3, 250000, tzinfo=timezone.utc)
    assert parse_timestamp(format_timestamp(ts)) == ts


def test_snapshot_wire_fields():
    data = make_snapshot(1).to_dict()

    assert list(data) == [
        'timestamp', 'cpu_overall', 'cpu_cores', 'ram_used', 'ram_total',
        'disk_usage', 'network_rx', 'network_tx', 'uptime_seconds',
        'cpu_temp', 'gpu_temp', 'processes',
    ]
    assert data['gpu_temp'] is None
    assert data['disk_usage'] == [
        {'mount': "/", 'fs': "ext4", 'total': 100, 'used': 40, 'free': 60},
    ]
    assert data['processes'][0]['status'] == "sleeping"


def test_os_fields_only_present_when_known():
    data = make_snapshot(os_name="Ubuntu", os_version="24.04").to_dict()

    assert data['os_name'] == "Ubuntu"
    assert data['os_version'] == "24.04"


def test_disk_without_fs_omits_key():
    assert DiskInfo(mount="C:\\", total=1, used=0, free=1).to_dict() == {
        'mount': "C:\\", 'total': 1, 'used': 0, 'free': 1,
    }


def test_snapshot_survives_json():
    snapshot = make_snapshot(3, os_name="Debian GNU/Linux", os_version="12")

    restored = Snapshot.from_dict(json.loads(json.dumps(snapshot.to_dict())))

    assert restored == snapshot


def test_null_lists_decode_as_empty():
    restored = Snapshot.from_dict({
        'timestamp': "2024-05-01T12:00:00Z",
        'cpu_cores': None,
        'disk_usage': None,
        'processes': None,
    })

    assert restored.cpu_cores == ()
    assert restored.disk_usage == ()
    assert restored.processes == ()
    assert restored.timestamp == EPOCH


def test_metric_batch_payload():
    batch = MetricBatch(machine_token="tok", metrics=[make_snapshot(0), make_snapshot(1)])

    data = batch.to_dict()

    assert data['machine_token'] == "tok"
    assert len(data['metrics']) == 2
    assert data['metrics'][1]['cpu_overall'] == 1.0
