import pytest

from binlogscope.cli import main, parse_args

REQUIRED = [
    "-H", "localhost",
    "-u", "user",
    "-p", "password",
    "-s", "2024-01-01 10:00:00",
    "-e", "2024-01-01 11:00:00",
]


def test_parse_args_defaults():
    args = parse_args(REQUIRED)
    assert args.host == "localhost"
    assert args.port == 3306
    assert args.workers == 3
    assert args.output == ""
    assert args.verbose is False
    assert args.start_time == "2024-01-01 10:00:00"


def test_parse_args_long_options():
    args = parse_args(REQUIRED + ["--port", "3307", "--workers", "5", "--output", "out.sql", "--verbose"])
    assert args.port == 3307
    assert args.workers == 5
    assert args.output == "out.sql"
    assert args.verbose is True


def test_parse_args_short_options():
    args = parse_args(REQUIRED + ["-P", "3310", "-w", "1", "-o", "res.txt", "-v"])
    assert (args.port, args.workers, args.output, args.verbose) == (3310, 1, "res.txt", True)


@pytest.mark.parametrize("missing", ["-H", "-u", "-p", "-s", "-e"])
def test_parse_args_requires_option(missing):
    index = REQUIRED.index(missing)
    argv = REQUIRED[:index] + REQUIRED[index + 2:]
    with pytest.raises(SystemExit) as info:
        parse_args(argv)
    assert info.value.code == 2


def test_main_rejects_bad_start_time(capsys):
    argv = list(REQUIRED)
    argv[argv.index("-s") + 1] = "2024/01/01 10:00"
    assert main(argv) == 1
    assert "Invalid start time format" in capsys.readouterr().err


def test_main_rejects_bad_end_time(capsys):
    argv = list(REQUIRED)
    argv[argv.index("-e") + 1] = "not a time"
    assert main(argv) == 1
    assert "Invalid end time format" in capsys.readouterr().err


def test_main_rejects_reversed_range(capsys):
    argv = list(REQUIRED)
    argv[argv.index("-s") + 1] = "2024-01-02 00:00:00"
    assert main(argv) == 1
    assert "cannot be later" in capsys.readouterr().err