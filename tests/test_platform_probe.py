from __future__ import annotations

import json

from discovery.platform_probe import (LinuxProbe, MacProbe, WindowsProbe, candidate_from_command_line,
                                      is_target_process, parse_listening_ports, select_probe)

LINUX_CMD = ("/usr/share/antigravity/resources/bin/language_server_linux --enable_lsp "
             "--extension_server_port 41234 --csrf_token 1f2e3d4c-aaaa-bbbb --app_data_dir antigravity")


def test_select_probe_per_platform():
    probe, target = select_probe("Windows", "AMD64")
    assert isinstance(probe, WindowsProbe)
    assert target == "language_server_windows_x64.exe"

    probe, target = select_probe("Darwin", "arm64")
    assert isinstance(probe, MacProbe)
    assert target == "language_server_macos_arm"

    _, target = select_probe("Darwin", "x86_64")
    assert target == "language_server_macos"

    probe, target = select_probe("Linux", "x86_64")
    assert isinstance(probe, LinuxProbe)
    assert target == "language_server_linux"


def test_target_process_requires_antigravity_marker():
    assert is_target_process("language_server --app_data_dir antigravity")
    assert is_target_process("C:\\Program Files\\Antigravity\\bin\\language_server.exe --csrf_token x")
    assert not is_target_process("/opt/windsurf/language_server_linux --csrf_token abc")


def test_candidate_extraction():
    candidate = candidate_from_command_line(99, LINUX_CMD)
    assert candidate.pid == 99
    assert candidate.extension_port == 41234
    assert candidate.csrf_token == "1f2e3d4c-aaaa-bbbb"


def test_candidate_without_token_is_dropped_and_missing_port_is_zero():
    assert candidate_from_command_line(1, "language_server --app_data_dir antigravity") is None

    candidate = candidate_from_command_line(2, "language_server --app_data_dir antigravity --csrf_token abc")
    assert candidate.extension_port == 0


def test_linux_pgrep_output():
    output = f"1234 {LINUX_CMD}\n5678 /opt/other/language_server_linux --csrf_token zzz\n\n"
    candidates = LinuxProbe().parse_candidates(output)
    assert [c.pid for c in candidates] == [1234]
    assert LinuxProbe().list_processes_command("language_server_linux") == "pgrep -af language_server_linux"
    assert MacProbe().list_processes_command("language_server_macos") == "pgrep -fl language_server_macos"


def test_windows_json_listing():
    data = [
        {"ProcessId": 10, "CommandLine": "C:\\x\\language_server_windows_x64.exe --app_data_dir antigravity --csrf_token t1"},
        {"ProcessId": 11, "CommandLine": None},
    ]
    candidates = WindowsProbe().parse_candidates(json.dumps(data))
    assert [(c.pid, c.csrf_token) for c in candidates] == [(10, "t1")]

    single = WindowsProbe().parse_candidates(json.dumps(data[0]))
    assert [c.pid for c in single] == [10]


def test_windows_falls_back_to_key_value_blocks():
    output = (
        "CommandLine=C:\\x\\language_server_windows_x64.exe --app_data_dir antigravity "
        "--extension_server_port 5000 --csrf_token abc-123\r\n"
        "ProcessId=777\r\n\r\n"
        "CommandLine=\r\nProcessId=778\r\n"
    )
    candidates = WindowsProbe().parse_candidates(output)
    assert len(candidates) == 1
    assert candidates[0].pid == 777
    assert candidates[0].extension_port == 5000


def test_windows_legacy_listing_switch():
    probe = WindowsProbe()
    assert probe.list_processes_command("ls.exe").startswith("powershell")
    probe.use_legacy_listing()
    assert probe.list_processes_command("ls.exe").startswith("wmic")


def test_parse_ports_netstat_windows():
    output = (
        "  TCP    127.0.0.1:42100        0.0.0.0:0              LISTENING       1234\n"
        "  TCP    127.0.0.1:42099        0.0.0.0:0              LISTENING       1234\n"
        "  TCP    127.0.0.1:42100        0.0.0.0:0              LISTENING       1234\n"
        "  TCP    127.0.0.1:5555         0.0.0.0:0              LISTENING       9999\n"
    )
    assert parse_listening_ports(output, pid=1234) == [42099, 42100]
    assert parse_listening_ports(output) == [5555, 42099, 42100]


def test_parse_ports_ss_lsof_and_netstat_linux():
    ss = ('LISTEN 0      4096       127.0.0.1:42101      0.0.0.0:*    '
          'users:(("language_server",pid=1234,fd=9))\n')
    lsof = "language_ 1234 ada   9u  IPv4 0x1234      0t0  TCP 127.0.0.1:42102 (LISTEN)\n"
    netstat = "tcp        0      0 127.0.0.1:42103         0.0.0.0:*               LISTEN      1234/language_serve\n"
    other = "tcp        0      0 127.0.0.1:9000          0.0.0.0:*               LISTEN      42/nginx\n"

    assert parse_listening_ports(ss, pid=1234) == [42101]
    assert parse_listening_ports(lsof, pid=1234) == [42102]
    assert parse_listening_ports(netstat + other, pid=1234) == [42103]


def test_parse_ports_ignores_non_listening_rows():
    output = "  TCP    127.0.0.1:42100        127.0.0.1:55000        ESTABLISHED     1234\n"
    assert parse_listening_ports(output, pid=1234) == []
