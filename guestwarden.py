#!/usr/bin/env python3
# Script: guestwarden.py
#
# What this does (for my future self):
# - Find the built-in Guest account by RID 501, whatever it has been renamed to
# - Report whether it's enabled and whether it sits in BUILTIN\Administrators (S-1-5-32-544)
# - Converge it to Disabled (default) or Enabled, only touching what differs
# - Optionally kick it out of Administrators
# - --audit-only never changes anything, --dry-run says what it would do, --confirm asks first
# - Logs to %ProgramData%\GuestWarden\guestwarden.log (rotated)

# ==============================
# Imports
# ==============================

# Standard library
import argparse
import ctypes
import logging
import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from logging.handlers import RotatingFileHandler
from typing import Callable

# Third-party
from colorama import Fore, Style, just_fix_windows_console

# Local
from guestwarden_host import (
    ADMINISTRATORS_SID,
    DEFAULT_ADMIN_GROUP_NAME,
    GUEST_RID,
    HostCommandError,
    HostPlatform,
    LocalWindowsHost,
    SecurityIdentifier,
)

#=================#
# Global Settings #
#=================#

VERSION = "1.0.0"
MIN_PYTHON_VERSION = (3, 11)

#-----------------------------#
# Defaults (env-overridable)  #
#-----------------------------#
DEFAULT_ENSURE = "Disabled"         # Disabled or Enabled
REMOVE_FROM_ADMINS = False          # Also enforce non-membership in Administrators
CONFIRM_CHANGES = False             # Prompt before every change

if os.name == "nt":
    LOG_FILE = os.path.join(os.environ.get("ProgramData", r"C:\ProgramData"), "GuestWarden", "guestwarden.log")
else:
    LOG_FILE = "/var/log/guestwarden/guestwarden.log"
LOG_MAX_BYTES = 1024 * 1024
LOG_BACKUPS = 5

#===========================#
# Environment Overlay Utils #
#===========================#

# Function: _env_bool
# Purpose : Read boolean-like env vars with a default.
# Notes   : Accepts 1/true/yes/y/on (case-insensitive).
def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")

# Function: _env_str
# Purpose : Return stripped string from env with default fallback.
def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return (v.strip() if v is not None and v.strip() else default)

#===========================#
# Apply Environment Overrides
#===========================#

DEFAULT_ENSURE     = _env_str ("GUESTWARDEN_ENSURE", DEFAULT_ENSURE)
REMOVE_FROM_ADMINS = _env_bool("GUESTWARDEN_REMOVE_FROM_ADMINS", REMOVE_FROM_ADMINS)
CONFIRM_CHANGES    = _env_bool("GUESTWARDEN_CONFIRM", CONFIRM_CHANGES)
LOG_FILE           = _env_str ("GUESTWARDEN_LOG_FILE", LOG_FILE)

#===================#
# Errors            #
#===================#

class GuestWardenError(Exception):
    """Fatal for the run; exit_code is what the process returns."""

    exit_code = 1


class PermissionDenied(GuestWardenError):
    exit_code = 3


class AccountNotFound(GuestWardenError):
    exit_code = 4


class AccountQueryFailure(GuestWardenError):
    exit_code = 4


class MutationFailure(GuestWardenError):
    exit_code = 5

    def __init__(self, action: str, account: "AccountIdentity", reason: str):
        self.action = action
        self.account = account
        self.reason = reason
        super().__init__(f"{action} failed for '{account.name}' ({account.sid}): {reason}")

#===================#
# Model             #
#===================#

@dataclass(frozen=True)
class AccountIdentity:
    sid: SecurityIdentifier
    name: str
    enabled: bool


@dataclass(frozen=True)
class GroupIdentity:
    sid: SecurityIdentifier
    name: str
    name_is_fallback: bool = False


class DesiredState(Enum):
    ENABLED = "Enabled"
    DISABLED = "Disabled"

    @classmethod
    def parse(cls, text: str) -> "DesiredState":
        for state in cls:
            if state.value.lower() == (text or "").strip().lower():
                return state
        raise ValueError(f"invalid state {text!r} (choose Disabled or Enabled)")


class ExecutionMode(Enum):
    APPLY = "apply"
    DRY_RUN = "dry-run"
    AUDIT_ONLY = "audit-only"


@dataclass(frozen=True)
class RunOptions:
    desired: DesiredState = DesiredState.DISABLED
    remove_from_administrators: bool = False
    mode: ExecutionMode = ExecutionMode.APPLY


@dataclass
class ActionOutcome:
    action: str         # "enable", "disable", "remove-from-group" or "none"
    target: str
    decided: bool       # a change was needed
    applied: bool       # the change was actually made
    message: str


@dataclass
class ConvergenceReport:
    account: AccountIdentity
    group: GroupIdentity
    outcomes: list[ActionOutcome] = field(default_factory=list)

    @property
    def mutations(self) -> int:
        return sum(1 for o in self.outcomes if o.applied)


@dataclass
class AuditReport:
    account: AccountIdentity
    group: GroupIdentity
    enabled: bool
    member: bool

#===================#
# Console           #
#===================#

Emit = Callable[[str, str], None]

_COLOR_MONO = False

def fncSetColorMode(monochrome: bool):
    """Call once after parsing args to disable colours when needed."""
    global _COLOR_MONO
    _COLOR_MONO = bool(monochrome)

def fncWantColor(stream=None):
    """Decide if we should output ANSI colours."""
    stream = stream or sys.stdout
    if _COLOR_MONO:
        return False
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    try:
        return stream.isatty()
    except (AttributeError, ValueError):
        return False

def fncColor(text: str, *styles: str, stream=None) -> str:
    """fncColor('Hello', 'green', 'bold') -> styled text (or plain if disabled)."""
    if not fncWantColor(stream) or not styles:
        return text
    m = {
        "red": Fore.RED, "green": Fore.GREEN, "yellow": Fore.YELLOW, "blue": Fore.BLUE,
        "magenta": Fore.MAGENTA, "cyan": Fore.CYAN, "white": Fore.WHITE, "gray": Fore.LIGHTBLACK_EX,
        "bold": Style.BRIGHT, "dim": Style.DIM,
    }
    seq = "".join(m.get(s, "") for s in styles)
    return f"{seq}{text}{Style.RESET_ALL}"

# Function: fncPrintMessage
# Purpose : The one console writer; report lines to stdout, warnings/errors to stderr.
# Notes   : Text is never decorated beyond colour, so piped output stays parseable.
def fncPrintMessage(message: str, msg_type: str = "info"):
    styles = {
        "info":     ("cyan",),
        "account":  ("white", "bold"),
        "state":    ("cyan",),
        "change":   ("green",),
        "nochange": ("gray",),
        "dryrun":   ("yellow",),
        "skipped":  ("yellow",),
        "warning":  ("yellow",),
        "error":    ("red", "bold"),
    }
    if msg_type in ("warning", "error"):
        stream = sys.stderr
        message = f"{'Warning' if msg_type == 'warning' else 'Error'}: {message}"
    else:
        stream = sys.stdout
    print(fncColor(message, *styles.get(msg_type, ()), stream=stream), file=stream)

#===================#
# Utility / Logging #
#===================#

# Function: fncSetupLogging
# Purpose : Log to a rotating file; stderr only with --verbose.
# Notes   : stdout is reserved for the report lines.
def fncSetupLogging(log_file: str | None = LOG_FILE, verbose: bool = False):
    handlers: list[logging.Handler] = []
    if log_file:
        try:
            os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
            fh = RotatingFileHandler(log_file, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8")
            fh.setLevel(logging.DEBUG if verbose else logging.INFO)
            handlers.append(fh)
        except OSError as e:
            fncPrintMessage(f"Couldn't open log file {log_file} ({e}); logging to console only", "warning")
    if verbose:
        sh = logging.StreamHandler(sys.stderr)
        sh.setLevel(logging.DEBUG)
        handlers.append(sh)
    elif not handlers:
        # operator-facing warnings already go through fncPrintMessage
        handlers.append(logging.NullHandler())
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=handlers,
        force=True,
    )
    logging.info("---- Run start (v%s) ----", VERSION)

# Function: fncCheckPyVersion
# Purpose : Fail fast on unsupported Python versions.
def fncCheckPyVersion():
    if sys.version_info < MIN_PYTHON_VERSION:
        need = ".".join(str(n) for n in MIN_PYTHON_VERSION)
        fncPrintMessage(f"This script requires Python {need} or higher. Please upgrade.", "error")
        sys.exit(1)

# Function: fncIsElevated
# Purpose : True when the current process holds local admin rights.
# Notes   : IsUserAnAdmin on Windows, euid 0 elsewhere.
def fncIsElevated() -> bool:
    if os.name == "nt":
        try:
            return ctypes.windll.shell32.IsUserAnAdmin() != 0
        except (AttributeError, OSError):
            return False
    return os.geteuid() == 0

#==============================#
# Execution mode controller    #
#==============================#

class ExecutionGate:
    """Single decision point for every change: privilege, dry-run and confirmation."""

    def __init__(
        self,
        mode: ExecutionMode,
        is_elevated: Callable[[], bool] = fncIsElevated,
        confirm: bool = False,
        prompt: Callable[[str], str] = input,
        emit: Emit = fncPrintMessage,
    ):
        self.mode = mode
        self.confirm = confirm
        self._is_elevated = is_elevated
        self._prompt = prompt
        self._emit = emit

    def require_elevated_privilege(self):
        if not self._is_elevated():
            raise PermissionDenied(
                "This needs local Administrator rights. Re-run from an elevated prompt."
            )
        logging.debug("Elevation check passed")

    def confirm_or_skip(self, description: str, action: Callable[[], None]) -> bool:
        if self.mode is ExecutionMode.AUDIT_ONLY:
            logging.error("Refusing to %s in audit-only mode", description)
            return False
        if self.mode is ExecutionMode.DRY_RUN:
            logging.info("Dry run: would %s", description)
            self._emit(f"Dry run: would {description}", "dryrun")
            return False
        if self.confirm and not self._ask(description):
            logging.info("Operator declined: %s", description)
            self._emit(f"Skipped: {description} (not confirmed)", "skipped")
            return False
        action()
        return True

    def _ask(self, description: str) -> bool:
        try:
            answer = self._prompt(f"{fncColor('?', 'cyan')} Proceed to {description}? [y/{fncColor('N', 'green')}]: ")
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")

#====================#
# Identity resolver  #
#====================#

# Function: fncResolveAccountBySid
# Purpose : Find the local account whose SID ends in the given well-known RID.
# Notes   : Never looks at names; Guest can be renamed or localized.
def fncResolveAccountBySid(host: HostPlatform, rid: int = GUEST_RID) -> AccountIdentity:
    try:
        accounts = host.list_accounts()
    except HostCommandError as e:
        raise AccountQueryFailure(f"Could not enumerate local accounts: {e}") from e

    matches = [a for a in accounts if a.sid.is_local_account() and a.sid.rid == rid]
    if not matches:
        raise AccountNotFound(f"No local account with RID {rid} exists on this host")
    if len(matches) > 1:
        logging.warning("Several local accounts end in RID %d (%s); using %s",
                        rid, [str(a.sid) for a in matches], matches[0].sid)

    found = matches[0]
    logging.info("Resolved RID %d -> '%s' (%s), enabled=%s", rid, found.name, found.sid, found.enabled)
    return AccountIdentity(sid=found.sid, name=found.name, enabled=found.enabled)

# Function: fncResolveGroupBySid
# Purpose : Translate a well-known group SID to its current display name.
# Notes   : Best-effort. Later calls address the group by SID, so a failed lookup only costs the label.
def fncResolveGroupBySid(host: HostPlatform, sid: SecurityIdentifier = ADMINISTRATORS_SID) -> GroupIdentity:
    fallback = DEFAULT_ADMIN_GROUP_NAME if sid == ADMINISTRATORS_SID else str(sid)
    try:
        qualified = host.translate_sid(sid)
    except HostCommandError as e:
        logging.warning("Could not translate %s (%s); using '%s'", sid, e, fallback)
        return GroupIdentity(sid=sid, name=fallback, name_is_fallback=True)

    # BUILTIN\Administratoren -> Administratoren
    name = qualified.rsplit("\\", 1)[-1].strip() or fallback
    logging.info("Resolved group %s -> '%s'", sid, name)
    return GroupIdentity(sid=sid, name=name)

#====================#
# State inspector    #
#====================#

def fncGetEnabledState(account: AccountIdentity) -> bool:
    return account.enabled

# Function: fncIsMember
# Purpose : Is account_sid a direct member of the group?
# Notes   : Enumeration failure counts as "not a member"; reporting must not abort the run.
def fncIsMember(host: HostPlatform, group: GroupIdentity, account_sid: SecurityIdentifier,
                emit: Emit | None = None) -> bool:
    try:
        members = host.list_group_member_sids(group.sid)
    except HostCommandError as e:
        logging.warning("Membership query for '%s' (%s) failed: %s; treating as not a member", group.name, group.sid, e)
        if emit:
            emit(f"could not read members of '{group.name}'; treating as not a member", "warning")
        return False
    member = any(m == account_sid for m in members)
    logging.debug("Group '%s' has %d member(s); %s member=%s", group.name, len(members), account_sid, member)
    return member

#====================#
# Convergence engine #
#====================#

# Function: fncConvergeAccountState
# Purpose : Enable/disable the account if (and only if) it differs from the desired state.
# Notes   : One gated host call, no retries. Host failure -> MutationFailure.
def fncConvergeAccountState(host: HostPlatform, gate: ExecutionGate, account: AccountIdentity,
                            desired: DesiredState, emit: Emit = fncPrintMessage) -> ActionOutcome:
    want_enabled = desired is DesiredState.ENABLED
    if fncGetEnabledState(account) == want_enabled:
        msg = f"No change: account '{account.name}' is already {desired.value}"
        logging.info("%s (%s)", msg, account.sid)
        emit(msg, "nochange")
        return ActionOutcome("none", str(account.sid), decided=False, applied=False, message=msg)

    verb = "enable" if want_enabled else "disable"
    description = f"{verb} account '{account.name}'"
    try:
        applied = gate.confirm_or_skip(description, lambda: host.set_account_enabled(account.sid, want_enabled))
    except HostCommandError as e:
        logging.error("%s failed for %s: %s", verb, account.sid, e)
        raise MutationFailure(verb, account, e.message or str(e)) from e

    msg = description
    if applied:
        msg = f"Action: {verb}d account '{account.name}'"
        logging.info("%s (%s)", msg, account.sid)
        emit(msg, "change")
    return ActionOutcome(verb, str(account.sid), decided=True, applied=applied, message=msg)

# Function: fncConvergeGroupMembership
# Purpose : Remove the account from the group when it's a direct member.
# Notes   : Group and member both addressed by SID.
def fncConvergeGroupMembership(host: HostPlatform, gate: ExecutionGate, account: AccountIdentity,
                               group: GroupIdentity, emit: Emit = fncPrintMessage) -> ActionOutcome:
    if not fncIsMember(host, group, account.sid, emit=emit):
        msg = f"No change: '{account.name}' is not a member of '{group.name}'"
        logging.info(msg)
        emit(msg, "nochange")
        return ActionOutcome("none", str(group.sid), decided=False, applied=False, message=msg)

    description = f"remove '{account.name}' from group '{group.name}'"
    try:
        applied = gate.confirm_or_skip(description, lambda: host.remove_group_member(group.sid, account.sid))
    except HostCommandError as e:
        logging.error("Removing %s from %s failed: %s", account.sid, group.sid, e)
        raise MutationFailure(f"removal from group '{group.name}'", account, e.message or str(e)) from e

    msg = description
    if applied:
        msg = f"Action: removed '{account.name}' from group '{group.name}'"
        logging.info("%s (%s)", msg, group.sid)
        emit(msg, "change")
    return ActionOutcome("remove-from-group", str(group.sid), decided=True, applied=applied, message=msg)

# Function: fncConverge
# Purpose : Account transition first, then (optionally) the group transition.
# Notes   : A MutationFailure stops the run; earlier steps stay applied.
def fncConverge(host: HostPlatform, gate: ExecutionGate, account: AccountIdentity, group: GroupIdentity,
                options: RunOptions, emit: Emit = fncPrintMessage) -> ConvergenceReport:
    report = ConvergenceReport(account=account, group=group)
    report.outcomes.append(fncConvergeAccountState(host, gate, account, options.desired, emit))
    if options.remove_from_administrators:
        report.outcomes.append(fncConvergeGroupMembership(host, gate, account, group, emit))
    logging.info("Convergence complete: %d change(s) applied", report.mutations)
    return report

# Function: fncAudit
# Purpose : Read-only report of enabled state and group membership.
def fncAudit(host: HostPlatform, account: AccountIdentity, group: GroupIdentity,
             emit: Emit = fncPrintMessage) -> AuditReport:
    member = fncIsMember(host, group, account.sid, emit=emit)
    emit(f"Member: {'true' if member else 'false'}", "state")
    logging.info("Audit: '%s' enabled=%s member_of('%s')=%s", account.name, account.enabled, group.name, member)
    return AuditReport(account=account, group=group, enabled=fncGetEnabledState(account), member=member)

#====================#
# Orchestration      #
#====================#

# Function: fncExecute
# Purpose : Privilege check -> resolve -> report state -> audit or converge.
# Notes   : Setup errors raise before anything is changed.
def fncExecute(host: HostPlatform, gate: ExecutionGate, options: RunOptions,
               emit: Emit = fncPrintMessage) -> ConvergenceReport | AuditReport:
    gate.require_elevated_privilege()

    account = fncResolveAccountBySid(host, GUEST_RID)
    group = fncResolveGroupBySid(host, ADMINISTRATORS_SID)
    if group.name_is_fallback:
        emit(f"could not translate {group.sid}; calling it '{group.name}'", "warning")

    emit(f"Account: {account.name} (SID {account.sid})", "account")
    emit(f"State: {'Enabled' if fncGetEnabledState(account) else 'Disabled'}", "state")

    if options.mode is ExecutionMode.AUDIT_ONLY:
        return fncAudit(host, account, group, emit)
    return fncConverge(host, gate, account, group, options, emit)

#=================#
# Script harness  #
#=================#

def _ensure_arg(value: str) -> DesiredState:
    try:
        return DesiredState.parse(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e

# Function: fncParseArgs
# Purpose : CLI flags layered over the env-derived defaults.
def fncParseArgs(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="guestwarden",
        description="Audit or converge the built-in Guest account (RID 501) and its Administrators membership.",
    )
    parser.add_argument("--ensure", type=_ensure_arg, default=None, metavar="{Disabled,Enabled}",
                        help=f"Desired account state (default: {DEFAULT_ENSURE})")
    parser.add_argument("--also-remove-from-administrators", action=argparse.BooleanOptionalAction,
                        default=REMOVE_FROM_ADMINS, help="Also make sure Guest is not in Administrators")
    parser.add_argument("--audit-only", action="store_true", help="Report current state only; change nothing")
    parser.add_argument("--dry-run", action="store_true", help="Show what would change without changing it")
    parser.add_argument("--confirm", action=argparse.BooleanOptionalAction, default=CONFIRM_CHANGES,
                        help="Ask before each change")
    parser.add_argument("--no-color", action="store_true", help="Monochrome output")
    parser.add_argument("--log-file", default=LOG_FILE, help=f"Log file (default: {LOG_FILE})")
    parser.add_argument("--no-log-file", action="store_true", help="Don't write a log file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    args = parser.parse_args(argv)

    args.ensure_explicit = args.ensure is not None
    if args.ensure is None:
        try:
            args.ensure = DesiredState.parse(DEFAULT_ENSURE)
        except ValueError as e:
            parser.error(f"GUESTWARDEN_ENSURE: {e}")
    return args

# Function: fncBuildOptions
# Purpose : Turn parsed args into RunOptions.
# Notes   : --ensure with --audit-only is warned about and ignored.
def fncBuildOptions(args: argparse.Namespace, emit: Emit = fncPrintMessage) -> RunOptions:
    if args.audit_only:
        mode = ExecutionMode.AUDIT_ONLY
        if getattr(args, "ensure_explicit", False):
            emit("--ensure is ignored with --audit-only; nothing will be changed", "warning")
            logging.warning("--ensure %s ignored because --audit-only is set", args.ensure.value)
    elif args.dry_run:
        mode = ExecutionMode.DRY_RUN
    else:
        mode = ExecutionMode.APPLY
    return RunOptions(
        desired=args.ensure,
        remove_from_administrators=bool(args.also_remove_from_administrators),
        mode=mode,
    )

# Function: fncMain
# Purpose : Program entrypoint; returns the process exit code.
# Notes   : host/is_elevated/prompt are injectable; defaults are the real Windows ones.
def fncMain(argv: list[str] | None = None, host: HostPlatform | None = None,
            is_elevated: Callable[[], bool] | None = None,
            prompt: Callable[[str], str] = input) -> int:
    fncCheckPyVersion()
    args = fncParseArgs(argv)
    fncSetColorMode(args.no_color)
    just_fix_windows_console()
    fncSetupLogging(None if args.no_log_file else args.log_file, verbose=args.verbose)

    options = fncBuildOptions(args)
    logging.info("Mode=%s ensure=%s remove_from_admins=%s confirm=%s",
                 options.mode.value, options.desired.value, options.remove_from_administrators, args.confirm)
    gate = ExecutionGate(
        options.mode,
        is_elevated=is_elevated or fncIsElevated,
        confirm=args.confirm,
        prompt=prompt,
    )
    try:
        fncExecute(host or LocalWindowsHost(), gate, options)
    except GuestWardenError as e:
        logging.error("%s: %s", type(e).__name__, e)
        fncPrintMessage(str(e), "error")
        return e.exit_code
    except KeyboardInterrupt:
        fncPrintMessage("Interrupted. Every step is idempotent; just run it again.", "error")
        return 130
    except Exception as e:
        logging.exception("Unhandled exception: %s", e)
        fncPrintMessage(f"Unexpected failure: {e}", "error")
        return 1
    logging.info("---- Run complete ----")
    return 0

if __name__ == "__main__":
    sys.exit(fncMain())
