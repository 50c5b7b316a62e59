# Script: guestwarden_host.py
# Host platform layer for guestwarden.py
#
# What this does:
# - Typed security identifiers (S-1-5-21-...-501) so nothing compares names
# - One capability interface for the local account/group subsystem
# - Windows implementation that shells out to a pinned powershell.exe
# - Every call returns parsed rows or raises HostCommandError

# ==============================
# Imports
# ==============================

# Standard library
import json
import logging
import os
import re
import subprocess
from dataclasses import dataclass
from typing import Protocol

#=================#
# Global Settings #
#=================#

GUEST_RID = 501
ADMINISTRATORS_SID_TEXT = "S-1-5-32-544"
DEFAULT_ADMIN_GROUP_NAME = "Administrators"

# NT authority + SECURITY_NT_NON_UNIQUE (21) prefix used by local machine accounts
NT_AUTHORITY = 5
NT_NON_UNIQUE = 21

#------------------------------#
# Pinned binaries for exec     #
#------------------------------#
_SYSTEM_ROOT = os.environ.get("SystemRoot", r"C:\Windows")
BIN = {
  "powershell": os.path.join(_SYSTEM_ROOT, "System32", "WindowsPowerShell", "v1.0", "powershell.exe"),
}
POWERSHELL_TIMEOUT = 60     # Seconds

# Windows PowerShell 5.1 writes redirected stdout in the OEM code page unless told otherwise
UTF8_PREAMBLE = "[Console]::OutputEncoding = [System.Text.UTF8Encoding]::new($false); "

BIN["powershell"] = (os.getenv("GUESTWARDEN_POWERSHELL") or "").strip() or BIN["powershell"]

_SID_RE = re.compile(r"^S-(\d+)-(\d+)((?:-\d+)+)$", re.IGNORECASE)

#=========================#
# Security identifiers    #
#=========================#

@dataclass(frozen=True)
class SecurityIdentifier:
    """Structured SID: revision, identifier authority and sub-authorities.

    Equality is field-by-field, so S-1-5-21-1-2-3-501 never matches
    S-1-5-21-1-2-3-1501 the way a suffix check would.
    """

    revision: int
    authority: int
    sub_authorities: tuple[int, ...]

    @property
    def rid(self) -> int:
        return self.sub_authorities[-1]

    def is_local_account(self) -> bool:
        # S-1-5-21-<a>-<b>-<c>-<rid>
        return (
            self.authority == NT_AUTHORITY
            and len(self.sub_authorities) == 5
            and self.sub_authorities[0] == NT_NON_UNIQUE
        )

    def __str__(self) -> str:
        subs = "-".join(str(s) for s in self.sub_authorities)
        return f"S-{self.revision}-{self.authority}-{subs}"


# Function: fncParseSid
# Purpose : Parse the S-R-A-S1-...-Sn string form into a SecurityIdentifier.
# Notes   : Raises ValueError on anything malformed; sub-authorities are 32-bit.
def fncParseSid(text: str) -> SecurityIdentifier:
    m = _SID_RE.match((text or "").strip())
    if not m:
        raise ValueError(f"not a security identifier: {text!r}")
    revision = int(m.group(1))
    authority = int(m.group(2))
    subs = tuple(int(p) for p in m.group(3).lstrip("-").split("-"))
    if revision != 1:
        raise ValueError(f"unsupported SID revision {revision} in {text!r}")
    if authority >= 2 ** 48:
        raise ValueError(f"identifier authority out of range in {text!r}")
    if len(subs) > 15 or any(s >= 2 ** 32 for s in subs):
        raise ValueError(f"sub-authority out of range in {text!r}")
    return SecurityIdentifier(revision, authority, subs)


ADMINISTRATORS_SID = fncParseSid(ADMINISTRATORS_SID_TEXT)

#=========================#
# Host capability surface #
#=========================#

class HostCommandError(Exception):
    """A host account/group call failed (non-zero rc, timeout or bad output)."""

    def __init__(self, command: str, returncode: int, message: str):
        self.command = command
        self.returncode = returncode
        self.message = message
        super().__init__(f"{command} failed (rc={returncode}): {message or 'no error output'}")


@dataclass(frozen=True)
class HostAccount:
    sid: SecurityIdentifier
    name: str
    enabled: bool


class HostPlatform(Protocol):
    """What the core needs from the local identity subsystem."""

    def list_accounts(self) -> list[HostAccount]: ...

    def list_group_member_sids(self, group_sid: SecurityIdentifier) -> list[SecurityIdentifier]: ...

    def set_account_enabled(self, sid: SecurityIdentifier, enabled: bool) -> None: ...

    def remove_group_member(self, group_sid: SecurityIdentifier, member_sid: SecurityIdentifier) -> None: ...

    def translate_sid(self, sid: SecurityIdentifier) -> str: ...

#====================#
# PowerShell runner  #
#====================#

# Function: fncPowerShellTimeout
# Purpose : Seconds to wait on powershell.exe; GUESTWARDEN_PS_TIMEOUT overrides.
# Notes   : Read per call so a bad value is reported once logging is configured.
def fncPowerShellTimeout() -> int:
    raw = (os.getenv("GUESTWARDEN_PS_TIMEOUT") or "").strip()
    if not raw:
        return POWERSHELL_TIMEOUT
    try:
        value = int(raw)
    except ValueError:
        value = 0
    if value <= 0:
        logging.warning("Bad GUESTWARDEN_PS_TIMEOUT %r; using %ss", raw, POWERSHELL_TIMEOUT)
        return POWERSHELL_TIMEOUT
    return value

# Function: fncRunPowerShell
# Purpose : Execute a script block with the pinned powershell.exe; capture rc/stdout/stderr.
# Notes   : Returns (returncode, stdout, stderr). 127 = binary missing, 124 = timeout.
def fncRunPowerShell(script: str, timeout: int | None = None) -> tuple[int, str, str]:
    timeout = timeout or fncPowerShellTimeout()
    exe = BIN.get("powershell")
    if not exe or not os.path.exists(exe):
        return 127, "", f"binary not found: powershell -> {exe}"
    args = [exe, "-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass", "-Command", script]
    logging.debug("PowerShell: %s", script)
    try:
        p = subprocess.run(
            args,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            check=False,
        )
        return p.returncode, (p.stdout or "").lstrip("\ufeff").strip(), (p.stderr or "").strip()
    except subprocess.TimeoutExpired:
        return 124, "", f"timed out after {timeout}s"
    except FileNotFoundError as e:
        return 127, "", str(e)

# Function: _json_rows
# Purpose : Decode ConvertTo-Json output into a list of dict rows.
# Notes   : One row comes back as an object, many as an array, none as empty output.
def _json_rows(command: str, out: str) -> list[dict]:
    if not out:
        return []
    try:
        data = json.loads(out)
    except json.JSONDecodeError as e:
        raise HostCommandError(command, 0, f"bad JSON from PowerShell: {e}") from e
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return [row for row in data if isinstance(row, dict)]
    raise HostCommandError(command, 0, f"unexpected JSON shape: {type(data).__name__}")

# Function: _as_bool
# Purpose : PowerShell booleans arrive as true/false, but be lenient with 1/"True".
def _as_bool(v) -> bool:
    return (v is True) or (v == 1) or (str(v).strip().lower() in ("true", "1"))


class LocalWindowsHost:
    """HostPlatform backed by the Microsoft.PowerShell.LocalAccounts cmdlets.

    Every target is addressed by SID. SIDs are rendered from parsed
    SecurityIdentifier values, so nothing user-supplied reaches the command line.
    """

    def __init__(self, runner=None):
        self._run = runner or fncRunPowerShell

    def _call(self, command: str, script: str) -> str:
        rc, out, err = self._run(UTF8_PREAMBLE + script)
        if rc != 0:
            raise HostCommandError(command, rc, err)
        return out

    def list_accounts(self) -> list[HostAccount]:
        out = self._call(
            "Get-LocalUser",
            "Get-LocalUser | Select-Object Name, @{n='Sid';e={$_.SID.Value}}, Enabled "
            "| ConvertTo-Json -Compress",
        )
        accounts: list[HostAccount] = []
        for row in _json_rows("Get-LocalUser", out):
            try:
                sid = fncParseSid(str(row.get("Sid") or ""))
            except ValueError:
                logging.debug("Skipping local user with unparseable SID: %s", row)
                continue
            accounts.append(HostAccount(sid=sid, name=str(row.get("Name") or ""), enabled=_as_bool(row.get("Enabled"))))
        return accounts

    def list_group_member_sids(self, group_sid: SecurityIdentifier) -> list[SecurityIdentifier]:
        out = self._call(
            "Get-LocalGroupMember",
            f"Get-LocalGroupMember -SID '{group_sid}' "
            "| Select-Object Name, @{n='Sid';e={$_.SID.Value}} "
            "| ConvertTo-Json -Compress",
        )
        members: list[SecurityIdentifier] = []
        for row in _json_rows("Get-LocalGroupMember", out):
            try:
                members.append(fncParseSid(str(row.get("Sid") or "")))
            except ValueError:
                # orphaned or foreign principals
                logging.debug("Skipping group member with unparseable SID: %s", row)
        return members

    def set_account_enabled(self, sid: SecurityIdentifier, enabled: bool) -> None:
        cmdlet = "Enable-LocalUser" if enabled else "Disable-LocalUser"
        self._call(cmdlet, f"{cmdlet} -SID '{sid}' -ErrorAction Stop")

    def remove_group_member(self, group_sid: SecurityIdentifier, member_sid: SecurityIdentifier) -> None:
        self._call(
            "Remove-LocalGroupMember",
            f"Remove-LocalGroupMember -SID '{group_sid}' -Member '{member_sid}' -ErrorAction Stop",
        )

    def translate_sid(self, sid: SecurityIdentifier) -> str:
        out = self._call(
            "SecurityIdentifier.Translate",
            f"([System.Security.Principal.SecurityIdentifier]'{sid}')"
            ".Translate([System.Security.Principal.NTAccount]).Value",
        )
        if not out:
            raise HostCommandError("SecurityIdentifier.Translate", 0, f"no name returned for {sid}")
        return out.splitlines()[0].strip()
