"""Built-in tool catalog.

Each entry is an immutable ToolDefinition. Validators return an error
reason or None; they only ever see values that already passed the
parameter's kind check.
"""

from __future__ import annotations

import re
from typing import Any, Optional

from kaliguard.core.models import ParamKind, ParamSpec, ToolDefinition

DOMAIN_RE = re.compile(r"^([a-z0-9]+(-[a-z0-9]+)*\.)+[a-z]{2,}$", re.IGNORECASE)
NMAP_TARGET_RE = re.compile(r"^[a-zA-Z0-9.-]+(?:/[0-9]{1,2})?$")
PORT_LIST_RE = re.compile(r"^([0-9]+(-[0-9]+)?)(,[0-9]+(-[0-9]+)?)*$")
MSF_DANGEROUS_RE = re.compile(r"rm\s|mv\s|>\s*/")

NMAP_SCAN_TYPES = ("-sS", "-sT", "-sU", "-sV", "-A")
NUCLEI_SEVERITIES = ("info", "low", "medium", "high", "critical", "")


def _domain(value: str) -> Optional[str]:
    return None if DOMAIN_RE.match(value) else "Invalid domain format"


def _nmap_target(value: str) -> Optional[str]:
    if NMAP_TARGET_RE.match(value):
        return None
    return "Invalid target format. Use hostname, IP, or CIDR notation"


def _nmap_scan_type(value: str) -> Optional[str]:
    return None if value in NMAP_SCAN_TYPES else "Invalid scan type"


def _port_list(value: str) -> Optional[str]:
    return None if PORT_LIST_RE.match(value) else "Invalid port range format"


def _severity(value: str) -> Optional[str]:
    return None if value.lower() in NUCLEI_SEVERITIES else "Invalid severity level"


def _http_url(value: str) -> Optional[str]:
    if value.startswith("http"):
        return None
    return "URL must start with http:// or https://"


def _sqlmap_risk(value: Any) -> Optional[str]:
    return None if 1 <= value <= 3 else "Risk must be between 1 and 3"


def _msf_command(value: str) -> Optional[str]:
    if MSF_DANGEROUS_RE.search(value):
        return "Potentially dangerous command detected"
    return None


def _output_file() -> ParamSpec:
    return ParamSpec("output", "Output file to write results to", kind=ParamKind.FILE)


# Project Discovery tools
SUBFINDER = ToolDefinition(
    name="subfinder",
    description="Subdomain discovery tool that discovers valid subdomains for websites",
    command="subfinder",
    params=(
        ParamSpec(
            "domain",
            "Target domain to enumerate subdomains for",
            required=True,
            validator=_domain,
        ),
        ParamSpec(
            "all",
            "Use all sources (slow) for enumeration",
            kind=ParamKind.BOOLEAN,
            default=False,
        ),
        _output_file(),
    ),
    timeout=300,
)

NAABU = ToolDefinition(
    name="naabu",
    description="Fast port scanner for network discovery and security auditing",
    command="naabu",
    params=(
        ParamSpec(
            "host",
            "Host to scan (comma-separated for multiple hosts)",
            required=True,
        ),
        ParamSpec(
            "ports",
            "Ports to scan (e.g., 80,443,8080 or 1-1000)",
            default="80,443,8080,8443",
        ),
        ParamSpec("top-ports", "Top ports to scan (e.g., 100, 1000)"),
        _output_file(),
    ),
    timeout=600,
)

HTTPX = ToolDefinition(
    name="httpx",
    description="Fast and multi-purpose HTTP toolkit",
    command="httpx",
    params=(
        ParamSpec(
            "target",
            "Target URL, host, or file containing targets",
            required=True,
        ),
        ParamSpec("title", "Extract page title", kind=ParamKind.BOOLEAN, default=True),
        ParamSpec(
            "status-code",
            "Display response status-code",
            kind=ParamKind.BOOLEAN,
            default=True,
        ),
        ParamSpec(
            "tech-detect",
            "Detect website technologies",
            kind=ParamKind.BOOLEAN,
            default=False,
        ),
        _output_file(),
    ),
    timeout=300,
)

NUCLEI = ToolDefinition(
    name="nuclei",
    description="Fast vulnerability scanner based on simple YAML based DSL",
    command="nuclei",
    params=(
        ParamSpec(
            "target",
            "Target URL, host, or file containing targets",
            required=True,
        ),
        ParamSpec("templates", "Template or template directory to run (comma-separated)"),
        ParamSpec(
            "severity",
            "Filter templates by severity (info,low,medium,high,critical)",
            validator=_severity,
        ),
        _output_file(),
    ),
    timeout=1200,
)

DNSX = ToolDefinition(
    name="dnsx",
    description="Fast and multi-purpose DNS toolkit",
    command="dnsx",
    params=(
        ParamSpec("target", "Target domain or file containing domains", required=True),
        ParamSpec("a", "Query A record (default: true)", kind=ParamKind.BOOLEAN, default=True),
        ParamSpec("cname", "Query CNAME record", kind=ParamKind.BOOLEAN, default=False),
        _output_file(),
    ),
    timeout=300,
)

# Classic Kali tools
NMAP = ToolDefinition(
    name="nmap",
    description="Network exploration tool and security/port scanner",
    command="nmap",
    params=(
        ParamSpec(
            "target",
            "Target host or network range",
            required=True,
            validator=_nmap_target,
        ),
        ParamSpec(
            "scan_type",
            "Type of scan to perform",
            default="-sS",
            validator=_nmap_scan_type,
        ),
        ParamSpec(
            "ports",
            "Ports to scan (e.g., 80,443,8080 or 1-1024)",
            default="1-1024",
            validator=_port_list,
        ),
    ),
    timeout=300,
)

SQLMAP = ToolDefinition(
    name="sqlmap",
    description="Automatic SQL injection and database takeover tool",
    command="sqlmap",
    params=(
        ParamSpec("url", "Target URL", required=True, validator=_http_url),
        ParamSpec(
            "risk",
            "Risk of tests to perform (1-3)",
            kind=ParamKind.NUMBER,
            default=1,
            validator=_sqlmap_risk,
        ),
    ),
    timeout=600,
)

METASPLOIT = ToolDefinition(
    name="metasploit",
    description="Metasploit Framework console",
    command="msfconsole",
    params=(
        ParamSpec(
            "command",
            "Metasploit command to execute",
            required=True,
            validator=_msf_command,
        ),
    ),
    timeout=300,
)

NIKTO = ToolDefinition(
    name="nikto",
    description="Web server scanner",
    command="nikto",
    params=(
        ParamSpec("host", "Target host", required=True),
        ParamSpec("port", "Port to scan", kind=ParamKind.NUMBER, default=80),
    ),
    timeout=300,
)

JOHN = ToolDefinition(
    name="john",
    description="Password cracker",
    command="john",
    params=(
        ParamSpec(
            "hash_file",
            "Path to file containing password hashes",
            required=True,
            kind=ParamKind.FILE,
        ),
        ParamSpec(
            "wordlist",
            "Path to wordlist",
            kind=ParamKind.FILE,
            default="/usr/share/wordlists/rockyou.txt",
        ),
    ),
    timeout=1800,
)

DEFAULT_TOOLS: tuple[ToolDefinition, ...] = (
    SUBFINDER,
    NAABU,
    HTTPX,
    NUCLEI,
    DNSX,
    NMAP,
    SQLMAP,
    METASPLOIT,
    NIKTO,
    JOHN,
)
