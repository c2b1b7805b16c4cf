"""Tests for the lashguard command line."""

import io
import sys

import pytest

from app.lashguard import main

ZERO = ['-y', '0', '-z', '0', '-a', '0']


@pytest.fixture()
def program(tmp_path):
    path = tmp_path / 'part.gcode'
    path.write_text('G1 X1.0\nG1 X2.0\nG1 X1.0\n')
    return path


def test_files(program, tmp_path):
    out = tmp_path / 'out.gcode'
    assert main(['-x', '0.1'] + ZERO + ['-i', str(program), '-o', str(out)]) == 0
    assert out.read_text() == 'G1 X1.00\nG1 X2.00\nG91\nG1 X-0.10\nG90\nG1 X1.00\n'


def test_standard_streams(monkeypatch, capsys):
    monkeypatch.setattr(sys, 'stdin', io.StringIO('G1 X5.123456\n'))
    assert main(['-x', '0'] + ZERO) == 0
    assert capsys.readouterr().out == 'G1 X5.12\n'


def test_correction_factor(program, capsys):
    assert main(['-x', '0.2', '-c', '0.5'] + ZERO + ['-i', str(program)]) == 0
    assert 'G1 X-0.10\n' in capsys.readouterr().out


def test_negative_lash_disables_compensation(program, capsys):
    assert main(['-x', '-0.3'] + ZERO + ['-i', str(program)]) == 0
    assert capsys.readouterr().out == 'G1 X1.00\nG1 X2.00\nG1 X1.00\n'


def test_missing_input(tmp_path, capsys):
    assert main(['-x', '0.1'] + ZERO + ['-i', str(tmp_path / 'missing.gcode')]) == 2
    assert capsys.readouterr().out == ''


def test_unwritable_output(program, tmp_path):
    out = tmp_path / 'no-such-dir' / 'out.gcode'
    assert main(['-x', '0.1'] + ZERO + ['-i', str(program), '-o', str(out)]) == 2


def test_unsupported_directive_is_fatal(tmp_path, caplog):
    path = tmp_path / 'offset.gcode'
    path.write_text('G1 X1\nG10 L2 P1 X0\nG1 X0\n')
    assert main(['-x', '0.1'] + ZERO + ['-i', str(path), '-o', str(tmp_path / 'out.gcode')]) == 1
    assert 'line 2' in caplog.text


def test_parse_error_is_fatal(tmp_path):
    path = tmp_path / 'bad.gcode'
    path.write_text('G1 X1 X2\n')
    assert main(['-x', '0'] + ZERO + ['-i', str(path), '-o', str(tmp_path / 'out.gcode')]) == 1


def test_lash_flags_are_required():
    with pytest.raises(SystemExit) as exc:
        main(['-x', '0.1'])
    assert exc.value.code == 2


@pytest.mark.parametrize('value', ['nan', 'inf'])
def test_non_finite_lash_is_rejected(value):
    with pytest.raises(SystemExit) as exc:
        main(['-x', value] + ZERO)
    assert exc.value.code == 2


def test_non_finite_correction_is_rejected():
    with pytest.raises(SystemExit) as exc:
        main(['-x', '0.1', '-c', 'nan'] + ZERO)
    assert exc.value.code == 2
