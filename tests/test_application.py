import csv
import gzip
import io
import os
import signal
import subprocess
import sys
from contextlib import redirect_stdout

import pytest

from jsonlogmerger.file_reading import PlainFileReader
from jsonlogmerger.jsonlogmerger import JsonLogMergerApplication, main

from .jsonlogmerger_testing import JsonLogMergerTestApp
from .util import contains_list, sample_file, write_jsonl

MERGED_A_B = [
    '[2023-07-14T08:00:01.000Z] INFO: service A starting (pid=101)',
    '[2023-07-14T08:00:02.000Z] INFO: service B starting',
    '[2023-07-14T08:00:03.000Z] DEBUG: loading config',
    '[2023-07-14T08:00:06.000Z] ERROR: request failed (req_id=r-1, err.code=E_BOOM)',
    '    Error: boom',
    '        at handler (app.js:10:5)',
    '[2023-07-14T08:00:06.000Z] WARN: slow response (elapsed_ms=1200)',
    '[2023-07-14T08:00:08.000Z] INFO: service B stopping',
    '[2023-07-14T08:00:09.000Z] INFO: service A stopping',
]


@pytest.mark.parametrize(
    "log_files,expected_lines",
    [
        (
            ["service_a.jsonl", "service_b.jsonl"],
            MERGED_A_B,
        ),
        (
            ["service_a.jsonl", "empty.jsonl", "service_b.jsonl"],
            MERGED_A_B,
        ),
        (
            ["service_b.jsonl", "service_c.jsonl", "service_a.jsonl"],
            [
                '[2023-07-14T08:00:01.000Z] INFO: service A starting (pid=101)',
                '[2023-07-14T08:00:02.000Z] INFO: service B starting',
                '[2023-07-14T08:00:03.000Z] DEBUG: loading config',
                '[2023-07-14T08:00:04.500Z] TRACE: service C polling',
                # equal timestamps are emitted in command line order
                '[2023-07-14T08:00:06.000Z] WARN: slow response (elapsed_ms=1200)',
                '[2023-07-14T08:00:06.000Z] ERROR: request failed (req_id=r-1, err.code=E_BOOM)',
                '    Error: boom',
                '        at handler (app.js:10:5)',
                '[2023-07-14T08:00:08.000Z] INFO: service B stopping',
                '[2023-07-14T08:00:09.000Z] INFO: service A stopping',
                '[2023-07-14T08:00:10.000Z] INFO: service C done',
                '    summary',
                '    --',
                '    {',
                '      "polls": 3',
                '    }',
            ],
        ),
    ]
)
def test_merging(log_files, expected_lines):
    log_merger = JsonLogMergerTestApp([sample_file(f) for f in log_files])
    merged_lines = log_merger()
    assert merged_lines == expected_lines
    assert log_merger.exit_code == 0


@pytest.mark.parametrize(
    "strict, expected_lines",
    [
        (
            False,
            [
                'starting up...',
                '[2023-07-14T08:00:01.000Z] INFO: ready',
                '{"level":"info","message":"no timestamp"}',
                '{not json',
                '[2023-07-14T08:00:02.000Z] FATAL: out of memory',
                '    heap',
                '    --',
                '    {',
                '      "used": 512',
                '    }',
            ]
        ),
        (
            True,
            [
                '[2023-07-14T08:00:01.000Z] INFO: ready',
                '[2023-07-14T08:00:02.000Z] FATAL: out of memory',
                '    heap',
                '    --',
                '    {',
                '      "used": 512',
                '    }',
            ]
        ),
    ]
)
def test_single_file_pass_through(strict, expected_lines):
    log_merger = JsonLogMergerTestApp(sample_file("mixed.jsonl"), strict=strict)
    assert log_merger() == expected_lines


def test_single_file_is_not_reordered(tmp_path):
    log_file = write_jsonl(tmp_path / "ooo.jsonl", [
        {"level": "info", "message": "second", "timestamp": "2023-07-14T08:00:02Z"},
        {"level": "info", "message": "first", "timestamp": "2023-07-14T08:00:01Z"},
    ])
    merged_lines = JsonLogMergerTestApp(str(log_file))()
    assert merged_lines == [
        '[2023-07-14T08:00:02Z] INFO: second',
        '[2023-07-14T08:00:01Z] INFO: first',
    ]


def test_gzip_input(tmp_path):
    gz_path = tmp_path / "service_b.jsonl.gz"
    with open(sample_file("service_b.jsonl"), "rb") as src, gzip.open(gz_path, "wb") as dest:
        dest.write(src.read())

    merged_lines = JsonLogMergerTestApp([sample_file("service_a.jsonl"), str(gz_path)])()
    assert merged_lines == MERGED_A_B


def test_many_sources(tmp_path):
    files = []
    for i in range(6):
        records = [
            {"level": "info", "message": f"file {i} line {n}", "timestamp": f"2023-07-14T08:{n:02d}:{i:02d}Z"}
            for n in range(0, 60, 7)
        ]
        files.append(str(write_jsonl(tmp_path / f"log{i}.jsonl", records)))

    merged_lines = JsonLogMergerTestApp(files)()
    assert len(merged_lines) == 6 * len(range(0, 60, 7))
    assert merged_lines == sorted(merged_lines)
    assert contains_list(merged_lines, [
        '[2023-07-14T08:07:05Z] INFO: file 5 line 7',
        '[2023-07-14T08:14:00Z] INFO: file 0 line 14',
    ])


def test_color_output():
    merged_lines = JsonLogMergerTestApp(sample_file("service_b.jsonl"), color=True)()
    assert merged_lines[0] == '[2023-07-14T08:00:02.000Z] \x1b[36mINFO\x1b[0m: \x1b[36mservice B starting\x1b[0m'


def test_output_file(tmp_path):
    out_path = tmp_path / "merged.txt"
    log_merger = JsonLogMergerTestApp(
        [sample_file("service_a.jsonl"), sample_file("service_b.jsonl")],
        output=str(out_path),
    )
    assert log_merger() == []
    assert out_path.read_text(encoding="utf-8").splitlines() == MERGED_A_B


def test_csv_output(tmp_path):
    csv_path = tmp_path / "merged.csv"
    file_a, file_b = sample_file("service_a.jsonl"), sample_file("service_b.jsonl")
    log_merger = JsonLogMergerTestApp([file_a, file_b], csv=str(csv_path))
    assert log_merger() == []

    with open(csv_path, newline="", encoding="utf-8") as csv_file:
        rows = list(csv.DictReader(csv_file))
    assert [(row["source"], row["level"], row["message"]) for row in rows] == [
        (file_a, "INFO", "service A starting"),
        (file_b, "INFO", "service B starting"),
        (file_a, "DEBUG", "loading config"),
        (file_a, "ERROR", "request failed"),
        (file_b, "WARN", "slow response"),
        (file_b, "INFO", "service B stopping"),
        (file_a, "INFO", "service A stopping"),
    ]


def test_duplicate_file_names_are_merged_once():
    file_b = sample_file("service_b.jsonl")
    merged_lines = JsonLogMergerTestApp([file_b, file_b])()
    assert len(merged_lines) == 3


def test_main_missing_file(tmp_path, capsys):
    missing = str(tmp_path / "missing.jsonl")
    exit_code = main(["--no-color", "--no-pager", sample_file("service_a.jsonl"), missing])
    assert exit_code == 1
    assert "cannot open" in capsys.readouterr().err


def test_main(capsys):
    exit_code = main(["--no-color", "--no-pager", "--strict", sample_file("mixed.jsonl")])
    assert exit_code == 0
    assert capsys.readouterr().out.splitlines()[0] == '[2023-07-14T08:00:01.000Z] INFO: ready'


def test_shutdown_request_drains_buffered_records():
    test_app = JsonLogMergerTestApp([sample_file("service_a.jsonl"), sample_file("service_b.jsonl")])
    app = JsonLogMergerApplication(test_app.args)

    handle_line = app._handle_line

    def handle_line_then_interrupt(key, line):
        handle_line(key, line)
        if not app._shutdown_requested:
            app.request_shutdown(signal.SIGTERM)

    app._handle_line = handle_line_then_interrupt

    with redirect_stdout(io.StringIO()) as capture:
        exit_code = app.run()

    # only the first line read was admitted, and it is still written out
    merged_lines = capture.getvalue().splitlines()
    assert exit_code == 128 + signal.SIGTERM
    assert len(merged_lines) == 1
    assert merged_lines[0] in (MERGED_A_B[0], MERGED_A_B[1])


@pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX signals and pipes")
def test_sigterm_exits_while_stdin_is_idle():
    read_fd, write_fd = os.pipe()
    proc = subprocess.Popen(
        [sys.executable, "-m", "jsonlogmerger", "--no-pager", "--no-color"],
        stdin=read_fd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
    os.close(read_fd)
    try:
        os.write(write_fd, b'{"level":"info","message":"first","timestamp":"2021-01-01T00:00:00.000Z"}\n')
        # once the record is out, the process is reading and its signal handlers are in place
        first_line = proc.stdout.readline()
        proc.send_signal(signal.SIGTERM)
        # the write end of stdin stays open, so nothing but the signal can end the run
        remaining, _ = proc.communicate(timeout=10)
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()
        os.close(write_fd)

    assert first_line == b"[2021-01-01T00:00:00.000Z] INFO: first\n"
    assert remaining == b""
    assert proc.returncode == 128 + signal.SIGTERM


def test_output_encoding_error(tmp_path):
    log_file = tmp_path / "accents.jsonl"
    log_file.write_text(
        'café is not a log record\n'
        '{"level":"info","message":"later","timestamp":"2023-07-14T08:00:01Z"}\n',
        encoding="utf-8",
    )
    out_path = tmp_path / "merged.txt"

    log_merger = JsonLogMergerTestApp(str(log_file), output=str(out_path), encoding="ascii")
    assert log_merger() == []
    assert log_merger.exit_code == 1


def test_read_error_sets_exit_code(monkeypatch):
    def failing_read_chunk(self, size):
        raise OSError(5, "Input/output error")

    monkeypatch.setattr(PlainFileReader, "read_chunk", failing_read_chunk)

    log_merger = JsonLogMergerTestApp([sample_file("service_a.jsonl"), sample_file("service_b.jsonl")])
    assert log_merger() == []
    assert log_merger.exit_code == 1
