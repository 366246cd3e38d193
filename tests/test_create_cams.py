from __future__ import annotations

import json
import math
from pathlib import Path

import pytest

from cams_stl import Branch
from cams_stl import build_cam_profile
from cams_stl import CamIOError
from cams_stl import CamJob
from cams_stl import convert_coord
from cams_stl import create_cams
from cams_stl import get_cam_centers
from cams_stl import job_from_json
from cams_stl import main
from cams_stl import read_coords_csv
from cams_stl import scale_coords
from cams_stl import UnreachableTargetError
from cams_stl import write_coords_csv

TESTFILES = Path(__file__).parent / 'testfiles'
STAR = TESTFILES / 'star_path.csv'

# reference star job
JOB = (5, 0.045, 0.045, 43500, 32300, 7060)


def test_read_coords_csv_with_header():
    path = read_coords_csv(STAR)
    assert len(path) == 10
    assert path[0] == (0.0, 22.8354)


def test_read_coords_csv_skips_blank_and_comments(tmp_path):
    f = tmp_path / 'p.csv'
    f.write_text('# traced outline\n\n1,2\n3,4,extra\n')
    assert read_coords_csv(f) == [(1.0, 2.0), (3.0, 4.0)]


def test_read_coords_csv_header_after_comment(tmp_path):
    """A header below leading comment lines is still recognised"""
    f = tmp_path / 'p.csv'
    f.write_text('# traced outline\n\nx,y\n1,2\n3,4\n')
    assert read_coords_csv(f) == [(1.0, 2.0), (3.0, 4.0)]


def test_read_coords_csv_header_only_once(tmp_path):
    f = tmp_path / 'p.csv'
    f.write_text('x,y\n1,2\nx,y\n3,4\n')
    with pytest.raises(CamIOError):
        read_coords_csv(f)


def test_read_coords_csv_bad_row(tmp_path):
    f = tmp_path / 'p.csv'
    f.write_text('1,2\nthree,4\n')
    with pytest.raises(CamIOError):
        read_coords_csv(f)


def test_read_coords_csv_too_short(tmp_path):
    f = tmp_path / 'p.csv'
    f.write_text('1,2\n')
    with pytest.raises(CamIOError):
        read_coords_csv(f)


def test_read_coords_csv_missing(tmp_path):
    with pytest.raises(CamIOError) as exc:
        read_coords_csv(tmp_path / 'nope.csv')
    assert exc.value.path == tmp_path / 'nope.csv'


def test_coords_csv_roundtrip(tmp_path):
    coords = [(0.1, -2.5), (1e-7, 33333.333333)]
    f = tmp_path / 'c.csv'
    write_coords_csv(coords, f)
    assert read_coords_csv(f) == coords


def test_build_cam_profile_spreads_one_revolution():
    """Samples are turned through one revolution, then resampled"""
    path = scale_coords(read_coords_csv(STAR), 0.045, 0.045)
    left, _ = get_cam_centers(path, 7060.0, 43500.0, 32300.0)
    profile = build_cam_profile(path, left, 43500.0, 32300.0, 7060.0, Branch.PRIMARY, 5)
    assert len(profile) == len(path) * 5

    first = convert_coord(path[0], left, 43500.0, 32300.0, 7060.0, Branch.PRIMARY)
    assert profile[0] == pytest.approx(first.as_xy())
    second = convert_coord(path[1], left, 43500.0, 32300.0, 7060.0, Branch.PRIMARY)
    turned = second.rotated(-2.0 * math.pi / len(path))
    assert profile[5] == pytest.approx(turned.as_xy())


def test_create_cams_writes_both_sides(tmp_path):
    left_out = tmp_path / 'left.stl'
    right_out = tmp_path / 'right.stl'
    left, right = create_cams(STAR, left_out, right_out, *JOB)

    assert left_out.exists(), 'Did not write left file'
    assert right_out.exists(), 'Did not write right file'
    for mesh in (left, right):
        assert mesh.is_watertight
        assert mesh.is_winding_consistent
        assert len(mesh.faces) == 4 * 10 * 5
    assert left_out.read_bytes() != right_out.read_bytes()


def test_create_cams_is_deterministic(tmp_path):
    """Two runs give byte-identical STLs"""
    first = (tmp_path / 'a_left.stl', tmp_path / 'a_right.stl')
    second = (tmp_path / 'b_left.stl', tmp_path / 'b_right.stl')
    create_cams(STAR, *first, *JOB)
    create_cams(STAR, *second, *JOB)
    assert first[0].read_bytes() == second[0].read_bytes()
    assert first[1].read_bytes() == second[1].read_bytes()


def test_create_cams_debug_dir(tmp_path):
    debug = tmp_path / 'debug'
    debug.mkdir()
    create_cams(STAR, tmp_path / 'l.stl', tmp_path / 'r.stl', *JOB, debug_dir=debug)
    names = sorted(p.name for p in debug.iterdir())
    assert names == ['left_cam.svg', 'left_cam_coordinates.csv',
                     'right_cam.svg', 'right_cam_coordinates.csv']
    assert len(read_coords_csv(debug / 'left_cam_coordinates.csv')) == 50


def test_create_cams_unreachable_writes_nothing(tmp_path):
    """Links far too short for the path fail before any cam is written"""
    left_out = tmp_path / 'left.stl'
    with pytest.raises(UnreachableTargetError):
        create_cams(STAR, left_out, tmp_path / 'right.stl', 5, 0.045, 0.045, 100, 50, 7060)
    assert not left_out.exists()


def test_create_cams_missing_input(tmp_path):
    with pytest.raises(CamIOError):
        create_cams(tmp_path / 'none.csv', tmp_path / 'l.stl', tmp_path / 'r.stl', *JOB)


def test_job_from_json(tmp_path):
    job_file = tmp_path / 'job.json'
    job_file.write_text(json.dumps({
        'input_csv': 'star.csv',
        'left_output': 'out/left.stl',
        'right_output': 'out/right.stl',
        'n': 3,
        'scale': 7000,
    }))
    job = job_from_json(job_file)
    assert isinstance(job, CamJob)
    assert job.input_csv == str(tmp_path / 'star.csv')
    assert job.left_output == str(tmp_path / 'out' / 'left.stl')
    assert job.n == 3
    assert job.scale == 7000
    assert job.proximal_len == 43500.0


@pytest.mark.parametrize('payload', [
    [1, 2, 3],
    {'input_csv': 'a.csv', 'left_output': 'l.stl', 'right_output': 'r.stl', 'colour': 'red'},
    {'input_csv': 'a.csv'},
])
def test_job_from_json_rejects_bad_jobs(tmp_path, payload):
    job_file = tmp_path / 'job.json'
    job_file.write_text(json.dumps(payload))
    with pytest.raises(ValueError):
        job_from_json(job_file)


def test_cli_writes_cams(tmp_path, capsys):
    left_out = tmp_path / 'cams' / 'left.stl'
    right_out = tmp_path / 'cams' / 'right.stl'
    main(['--input', str(STAR), '--left-out', str(left_out), '--right-out', str(right_out)])
    assert left_out.exists() and right_out.exists()
    assert 'Wrote STL (left)' in capsys.readouterr().out


def test_cli_job_file(tmp_path):
    job_file = tmp_path / 'job.json'
    job_file.write_text(json.dumps({
        'input_csv': str(STAR),
        'left_output': 'left.stl',
        'right_output': 'right.stl',
    }))
    main(['--job', str(job_file)])
    assert (tmp_path / 'left.stl').exists()
    assert (tmp_path / 'right.stl').exists()


def test_cli_requires_outputs_with_input():
    with pytest.raises(SystemExit):
        main(['--input', str(STAR), '--left-out', 'left.stl'])


def test_cli_reports_unreachable(tmp_path):
    with pytest.raises(SystemExit) as exc:
        main(['--input', str(STAR), '--left-out', str(tmp_path / 'l.stl'),
              '--right-out', str(tmp_path / 'r.stl'), '--proximal', '100', '--distal', '50'])
    assert 'out of reach' in str(exc.value.code)
