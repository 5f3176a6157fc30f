import argparse
import asyncio
import contextlib
import inspect
import json
import logging
import re
import signal
import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation, getcontext, localcontext
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import aiohttp
from aiohttp import web
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import function_signature_to_4byte_selector, is_checksum_address, keccak

getcontext().prec = 80

TOKEN_DECIMALS = 18
TOKEN_SCALE = 10 ** TOKEN_DECIMALS
UINT256_MAX = 2 ** 256 - 1
UNKNOWN_ERROR = "Unknown error"
ERROR_STRING_SELECTOR = "0x08c379a0"
EXECUTION_REVERTED_PREFIX = "execution reverted:"

PROJECT_FIELDS = (
    "id",
    "owner",
    "name",
    "descriptionCID",
    "category",
    "imageCIDs",
    "audioCIDs",
    "isActive",
)
PROJECT_TUPLE_TYPE = "(uint256,address,string,string,string,string[],string[],bool)"
STATS_FIELDS = ("totalContributions", "numUniqueContributors", "sumSqrtContributions")

DEFAULT_ATTESTATION_TYPES = ["Artist", "Verified Builder", "Community Member", "Contributor"]

ALLOWANCE_NOTICE = (
    "Contributions need a prior token approval for the funding contract covering "
    "at least the contributed amount. This client neither grants nor checks it."
)

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
AMOUNT_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)$")

logger = logging.getLogger("tukopamoja")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


# ── Errors ──


class HubError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class LedgerConnectionError(HubError, ConnectionError):
    """No usable remote session: RPC not opened, node unreachable, or no sender account."""


class ReadError(HubError):
    """The top-level aggregate read failed; the whole result is void."""


class ValidationError(HubError, ValueError):
    """Caller input failed a local precondition. Raised before any remote call."""


class WriteError(HubError):
    """A remote write was rejected or reverted.

    ``write`` is the ``PendingWrite`` left in its failed terminal state.
    """

    def __init__(self, message: str, write: Optional["PendingWrite"] = None):
        super().__init__(message)
        self.write = write


class PartialReadWarning(UserWarning):
    """A per-item read failed and was replaced by a safe default. Logged, never raised."""


class RPCError(RuntimeError):
    def __init__(self, error: Any):
        if not isinstance(error, Mapping):
            error = {"message": str(error)}
        self.code = error.get("code")
        self.message = str(error.get("message") or "")
        self.data = error.get("data")
        self.reason = decode_revert_reason(self.data) or _reason_from_message(self.message)
        super().__init__(f"RPC error: {self.message or error}")


class TransactionReverted(RuntimeError):
    def __init__(self, tx_hash: str, reason: Optional[str], receipt: Optional[Dict[str, Any]] = None):
        self.tx_hash = tx_hash
        self.reason = reason
        self.receipt = receipt or {}
        super().__init__(f"transaction {tx_hash} reverted: {reason or 'no reason'}")


def decode_revert_reason(data: Any) -> Optional[str]:
    if isinstance(data, Mapping):
        data = data.get("data")
    if not isinstance(data, str) or not data.lower().startswith(ERROR_STRING_SELECTOR):
        return None
    try:
        (reason,) = abi_decode(["string"], bytes.fromhex(data[len(ERROR_STRING_SELECTOR):]))
    except (ValueError, DecodingError):
        return None
    return reason or None


def _reason_from_message(message: str) -> Optional[str]:
    if message.lower().startswith(EXECUTION_REVERTED_PREFIX):
        reason = message[len(EXECUTION_REVERTED_PREFIX):].strip()
        return reason or None
    return None


# Ordered field paths tried by extract_message; the first non-empty string wins.
MESSAGE_FIELD_PRECEDENCE: Tuple[Tuple[str, ...], ...] = (
    ("reason",),
    ("data", "message"),
    ("message",),
)


def _lookup_path(failure: Any, path: Sequence[str]) -> Any:
    value = failure
    for key in path:
        if value is None:
            return None
        if isinstance(value, Mapping):
            value = value.get(key)
        else:
            value = getattr(value, key, None)
    return value


def extract_message(failure: Any) -> str:
    """Normalize any failure shape into one human-readable message.

    Works on exceptions and on plain mappings (raw JSON-RPC error objects).
    """
    if failure is None:
        return UNKNOWN_ERROR
    for path in MESSAGE_FIELD_PRECEDENCE:
        value = _lookup_path(failure, path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    if isinstance(failure, BaseException):
        text = str(failure).strip()
        if text:
            return text
    elif isinstance(failure, str) and failure.strip():
        return failure.strip()
    return UNKNOWN_ERROR


# ── Addresses / ids / amounts ──


def normalize_address(addr: str) -> str:
    if not isinstance(addr, str):
        raise ValueError(f"address must be a string, got: {type(addr)}")
    addr = addr.strip().lower()
    if not addr.startswith("0x") or len(addr) != 42:
        raise ValueError(f"invalid address format: {addr}")
    int(addr[2:], 16)
    return addr


def is_strict_address(value: Any) -> bool:
    """0x-prefixed 40 hex chars; mixed-case input must also carry a valid checksum."""
    if not isinstance(value, str) or not ADDRESS_RE.match(value):
        return False
    body = value[2:]
    if body.islower() or body.isupper() or body.isdigit():
        return True
    return is_checksum_address(value)


def require_address(value: Any, label: str) -> str:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{label} is required")
    text = str(value).strip()
    if not is_strict_address(text):
        raise ValidationError(f"Invalid Ethereum address for {label}: {text}")
    return text


def parse_hex_int(value: Optional[str]) -> int:
    if value is None:
        return 0
    return int(value, 16)


def parse_ledger_id(value: Any) -> Optional[int]:
    """Parse a ledger-assigned identifier; None when it is not a non-negative integer."""
    if value is None or isinstance(value, bool):
        return None
    parsed: Optional[int] = None
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, float):
        if value.is_integer():
            parsed = int(value)
    elif isinstance(value, Decimal):
        if value.is_finite() and value == value.to_integral_value():
            parsed = int(value)
    elif isinstance(value, str):
        text = value.strip()
        try:
            parsed = int(text, 16) if text.lower().startswith("0x") else int(text, 10)
        except ValueError:
            return None
    if parsed is None or parsed < 0:
        return None
    return parsed


def to_ledger_amount(text: Any, require_positive: bool = True) -> int:
    """Parse a human decimal string into an 18-decimal fixed-point integer."""
    if text is None:
        raise ValidationError("amount is required")
    raw = str(text).strip()
    if not raw:
        raise ValidationError("amount is required")
    if not AMOUNT_RE.match(raw):
        raise ValidationError(f"amount is not a number: {raw}")
    try:
        amount = Decimal(raw)
    except InvalidOperation:
        raise ValidationError(f"amount is not a number: {raw}") from None
    if amount < 0 or (require_positive and amount == 0):
        raise ValidationError("amount must be greater than zero")
    # scaleb rounds to context precision, so widen it to keep every input digit
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, len(amount.as_tuple().digits) + TOKEN_DECIMALS)
        scaled = amount.scaleb(TOKEN_DECIMALS)
        if scaled != scaled.to_integral_value():
            raise ValidationError(f"amount has more than {TOKEN_DECIMALS} decimal places: {raw}")
        value = int(scaled)
    if value > UINT256_MAX:
        raise ValidationError(f"amount is too large: {raw}")
    return value


def to_display_amount(value: int) -> str:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"fixed-point amount must be an int, got: {type(value)}")
    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(value), TOKEN_SCALE)
    frac_text = str(frac).rjust(TOKEN_DECIMALS, "0").rstrip("0") or "0"
    return f"{sign}{whole}.{frac_text}"


# ── View model ──


@dataclass(frozen=True)
class FundingStats:
    total_contributions: int = 0
    unique_contributors: int = 0
    sum_sqrt_contributions: int = 0

    def to_api(self) -> Dict[str, Any]:
        return {
            "totalContributions": to_display_amount(self.total_contributions),
            "totalContributionsRaw": str(self.total_contributions),
            "uniqueContributors": self.unique_contributors,
            "sumSqrtContributions": str(self.sum_sqrt_contributions),
        }


@dataclass(frozen=True)
class Project:
    id: int
    owner: str = ""
    name: str = ""
    category: str = ""
    description_cid: str = ""
    image_cids: Tuple[str, ...] = ()
    audio_cids: Tuple[str, ...] = ()
    is_active: bool = False
    stats: Optional[FundingStats] = None
    your_contribution: Optional[int] = None

    def owned_by(self, account: Optional[str]) -> bool:
        if not account or not self.owner:
            return False
        return self.owner.strip().lower() == account.strip().lower()

    def to_api(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "owner": self.owner,
            "name": self.name,
            "category": self.category,
            "descriptionCID": self.description_cid,
            "imageCIDs": list(self.image_cids),
            "audioCIDs": list(self.audio_cids),
            "isActive": self.is_active,
            "stats": self.stats.to_api() if self.stats is not None else None,
            "yourContribution": to_display_amount(self.your_contribution)
            if self.your_contribution is not None
            else None,
        }


@dataclass(frozen=True)
class ContributionRecord:
    project_id: int
    contributor: str
    amount: int

    def to_api(self) -> Dict[str, Any]:
        return {
            "projectId": str(self.project_id),
            "contributor": self.contributor,
            "amount": to_display_amount(self.amount),
        }


@dataclass(frozen=True)
class RoleState:
    account: str = ""
    is_owner: bool = False
    is_attestor: bool = False
    attestation_flags: Dict[str, bool] = field(default_factory=dict)

    def to_api(self) -> Dict[str, Any]:
        return {
            "account": self.account,
            "isOwner": self.is_owner,
            "isAttestor": self.is_attestor,
            "attestations": dict(self.attestation_flags),
        }


@dataclass(frozen=True)
class ProfileView:
    account: str
    roles: RoleState
    owned_projects: Tuple[Project, ...] = ()
    contributed_projects: Tuple[Project, ...] = ()
    token_balance: Optional[int] = None

    @property
    def contributions(self) -> Tuple[ContributionRecord, ...]:
        return tuple(
            ContributionRecord(p.id, self.account.lower(), p.your_contribution or 0)
            for p in self.contributed_projects
        )

    def to_api(self) -> Dict[str, Any]:
        return {
            "account": self.account,
            "roles": self.roles.to_api(),
            "ownedProjects": [p.to_api() for p in self.owned_projects],
            "contributedProjects": [p.to_api() for p in self.contributed_projects],
            "contributions": [c.to_api() for c in self.contributions],
            "tokenBalance": to_display_amount(self.token_balance)
            if self.token_balance is not None
            else None,
        }


# ── Record normalizer ──


def _raw_field(raw: Any, name: str, fields: Sequence[str] = PROJECT_FIELDS) -> Any:
    if isinstance(raw, Mapping):
        return raw.get(name)
    idx = fields.index(name)
    return raw[idx] if idx < len(raw) else None


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _cids(value: Any) -> Tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(str(x) for x in value if x is not None and str(x))


def normalize_project(raw: Any) -> Optional[Project]:
    """Reshape one registry record; records without a valid id are dropped, never raised."""
    if not isinstance(raw, (Mapping, list, tuple)):
        logger.warning("dropping malformed project record: %r", raw)
        return None
    raw_id = _raw_field(raw, "id")
    project_id = parse_ledger_id(raw_id)
    if project_id is None:
        logger.warning("dropping project record with invalid id %r: %r", raw_id, raw)
        return None
    is_active = _raw_field(raw, "isActive")
    return Project(
        id=project_id,
        owner=_text(_raw_field(raw, "owner")).strip(),
        name=_text(_raw_field(raw, "name")),
        category=_text(_raw_field(raw, "category")),
        description_cid=_text(_raw_field(raw, "descriptionCID")),
        image_cids=_cids(_raw_field(raw, "imageCIDs")),
        audio_cids=_cids(_raw_field(raw, "audioCIDs")),
        is_active=bool(is_active) if is_active is not None else False,
    )


def normalize_stats(raw: Any) -> FundingStats:
    if isinstance(raw, Mapping):
        values = [raw.get(name) for name in STATS_FIELDS]
    elif isinstance(raw, (list, tuple)):
        values = list(raw[:3]) + [None] * (3 - len(raw[:3]))
    else:
        return FundingStats()
    total, unique, sum_sqrt = (parse_ledger_id(v) or 0 for v in values)
    return FundingStats(
        total_contributions=total,
        unique_contributors=unique,
        sum_sqrt_contributions=sum_sqrt,
    )


# ── JSON-RPC transport ──


class RPCClient:
    def __init__(self, url: str, timeout_sec: int = 12):
        self.url = url
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None
        self._id = 1

    async def __aenter__(self) -> "RPCClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def call(self, method: str, params: List[Any]) -> Any:
        if not self._session:
            raise LedgerConnectionError("RPC session is not initialized")
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        self._id += 1
        try:
            async with self._session.post(self.url, json=payload) as resp:
                data = await resp.json(content_type=None)
        except aiohttp.ClientConnectionError as e:
            raise LedgerConnectionError(f"cannot reach ledger node at {self.url}: {e}") from e
        if not isinstance(data, dict):
            raise RPCError({"message": f"malformed RPC response: {data!r}"})
        if "error" in data:
            raise RPCError(data["error"])
        return data.get("result")

    async def eth_call(self, to: str, data: str, block: str = "latest") -> str:
        return await self.call("eth_call", [{"to": to, "data": data}, block])

    async def send_transaction(self, tx: Dict[str, Any]) -> str:
        return await self.call("eth_sendTransaction", [tx])

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    async def get_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionByHash", [tx_hash])

    async def get_chain_id(self) -> int:
        return parse_hex_int(await self.call("eth_chainId", []))


def encode_call(name: str, arg_types: Sequence[str], args: Sequence[Any]) -> str:
    selector = function_signature_to_4byte_selector(f"{name}({','.join(arg_types)})")
    return "0x" + (selector + abi_encode(list(arg_types), list(args))).hex()


def decode_result(out_types: Sequence[str], result: Optional[str]) -> Tuple[Any, ...]:
    if not result or result == "0x":
        raise RPCError({"message": "empty eth_call result (no contract at address?)"})
    return tuple(abi_decode(list(out_types), bytes.fromhex(result[2:])))


class LedgerContract:
    def __init__(self, rpc: RPCClient, address: str, sender: Optional[str] = None):
        self.rpc = rpc
        self.address = normalize_address(address)
        self.sender = normalize_address(sender) if sender else None

    async def _read(
        self, name: str, arg_types: Sequence[str], args: Sequence[Any], out_types: Sequence[str]
    ) -> Tuple[Any, ...]:
        out = await self.rpc.eth_call(self.address, encode_call(name, arg_types, args))
        return decode_result(out_types, out)

    async def _write(self, name: str, arg_types: Sequence[str], args: Sequence[Any]) -> str:
        if not self.sender:
            raise LedgerConnectionError("no wallet account is connected for writes")
        tx = {"from": self.sender, "to": self.address, "data": encode_call(name, arg_types, args)}
        return await self.rpc.send_transaction(tx)


class ProjectRegistry(LedgerContract):
    async def get_all_active_projects(self) -> List[Dict[str, Any]]:
        (rows,) = await self._read("getAllActiveProjects", [], [], [f"{PROJECT_TUPLE_TYPE}[]"])
        return [dict(zip(PROJECT_FIELDS, row)) for row in rows]

    async def submit_project(
        self,
        name: str,
        description_cid: str,
        category: str,
        image_cids: Sequence[str],
        audio_cids: Sequence[str],
    ) -> str:
        return await self._write(
            "submitProject",
            ["string", "string", "string", "string[]", "string[]"],
            [name, description_cid, category, list(image_cids), list(audio_cids)],
        )


class FundingLedger(LedgerContract):
    async def get_project_stats(self, project_id: int) -> Tuple[int, int, int]:
        return await self._read(
            "getProjectStats", ["uint256"], [project_id], ["uint256", "uint256", "uint256"]
        )

    async def get_contributor_amount(self, project_id: int, account: str) -> int:
        (amount,) = await self._read(
            "getContributorAmount",
            ["uint256", "address"],
            [project_id, normalize_address(account)],
            ["uint256"],
        )
        return amount

    async def contribute(self, project_id: int, amount: int) -> str:
        return await self._write("contribute", ["uint256", "uint256"], [project_id, amount])


class AttestationLedger(LedgerContract):
    async def owner(self) -> str:
        (addr,) = await self._read("owner", [], [], ["address"])
        return addr

    async def is_attestor(self, address: str) -> bool:
        (flag,) = await self._read("isAttestor", ["address"], [normalize_address(address)], ["bool"])
        return flag

    async def has_attestation_type(self, address: str, type_name: str) -> bool:
        (flag,) = await self._read(
            "hasAttestationType",
            ["address", "string"],
            [normalize_address(address), type_name],
            ["bool"],
        )
        return flag

    async def add_attestor(self, address: str) -> str:
        return await self._write("addAttestor", ["address"], [normalize_address(address)])

    async def remove_attestor(self, address: str) -> str:
        return await self._write("removeAttestor", ["address"], [normalize_address(address)])

    async def issue_attestation(self, recipient: str, type_name: str, hash_token: bytes) -> str:
        return await self._write(
            "issueAttestation",
            ["address", "string", "bytes32"],
            [normalize_address(recipient), type_name, hash_token],
        )


class TokenLedger(LedgerContract):
    async def balance_of(self, address: str) -> int:
        (balance,) = await self._read("balanceOf", ["address"], [normalize_address(address)], ["uint256"])
        return balance

    async def approve(self, spender: str, amount: int) -> str:
        return await self._write("approve", ["address", "uint256"], [normalize_address(spender), amount])


class ReceiptWaiter:
    """Resolves a transaction reference to its terminal state by polling for the receipt."""

    def __init__(self, rpc: RPCClient, poll_sec: float = 1.0, timeout_sec: float = 0):
        self.rpc = rpc
        self.poll_sec = max(0.05, poll_sec)
        self.timeout_sec = timeout_sec

    async def wait_for_confirmation(self, tx_hash: str) -> Dict[str, Any]:
        started = time.monotonic()
        while True:
            receipt = await self.rpc.get_receipt(tx_hash)
            if receipt:
                break
            if self.timeout_sec and time.monotonic() - started > self.timeout_sec:
                raise TransactionReverted(
                    tx_hash, f"not confirmed after {self.timeout_sec}s"
                )
            await asyncio.sleep(self.poll_sec)
        if receipt.get("status") and parse_hex_int(receipt["status"]) == 0:
            raise TransactionReverted(tx_hash, await self._replay_reason(tx_hash, receipt), receipt)
        return receipt

    async def _replay_reason(self, tx_hash: str, receipt: Dict[str, Any]) -> str:
        tx = await self.rpc.get_transaction(tx_hash)
        if not tx or not tx.get("to"):
            return "transaction reverted"
        call = {"from": tx.get("from"), "to": tx["to"], "data": tx.get("input", "0x")}
        if tx.get("value"):
            call["value"] = tx["value"]
        try:
            await self.rpc.call("eth_call", [call, receipt.get("blockNumber", "latest")])
        except RPCError as e:
            return extract_message(e)
        return "transaction reverted"


# ── Read aggregator / role resolver ──


def _log_partial(what: str, exc: BaseException) -> None:
    warning = PartialReadWarning(f"{what}: {extract_message(exc)}")
    logger.warning("partial read failed, using default (%s)", warning)


async def _safe_read(what: str, default: Any, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
    try:
        return await fn(*args)
    except Exception as e:
        _log_partial(what, e)
        return default


async def _load_project(raw: Any, funding: Any, account: Optional[str]) -> Optional[Project]:
    project = normalize_project(raw)
    if project is None:
        return None
    reads = [
        _safe_read(f"stats for project {project.id}", None, funding.get_project_stats, project.id)
    ]
    if account:
        reads.append(
            _safe_read(
                f"contribution of {account} to project {project.id}",
                None,
                funding.get_contributor_amount,
                project.id,
                account,
            )
        )
    results = await asyncio.gather(*reads)
    contribution = parse_ledger_id(results[1]) if account else None
    return replace(project, stats=normalize_stats(results[0]), your_contribution=contribution)


async def list_projects(registry: Any, funding: Any, account: Optional[str] = None) -> List[Project]:
    """Fan out one stats read per active project and join them, keeping registry order.

    A failed registry read voids the whole call (``ReadError``). A failed per-project
    read only zeroes that project's stats.
    """
    if registry is None or funding is None:
        raise LedgerConnectionError("project registry and funding ledger are not connected")
    try:
        raw_projects = await registry.get_all_active_projects()
    except LedgerConnectionError:
        raise
    except Exception as e:
        message = extract_message(e)
        logger.error("error fetching projects: %s", message)
        raise ReadError(message) from e

    loaded = await asyncio.gather(
        *(_load_project(raw, funding, account) for raw in raw_projects or [])
    )
    return [p for p in loaded if p is not None]


async def _is_owner(attestation: Any, account: str) -> bool:
    owner = await attestation.owner()
    return isinstance(owner, str) and owner.strip().lower() == account.strip().lower()


async def resolve_roles(
    account: Optional[str],
    attestation: Any,
    recognized_types: Iterable[str] = DEFAULT_ATTESTATION_TYPES,
) -> RoleState:
    if not account or attestation is None:
        return RoleState(account=account or "")
    types = list(dict.fromkeys(recognized_types))
    results = await asyncio.gather(
        _safe_read("owner check", False, _is_owner, attestation, account),
        _safe_read(f"attestor check for {account}", False, attestation.is_attestor, account),
        *(
            _safe_read(
                f"attestation type {t!r} for {account}",
                False,
                attestation.has_attestation_type,
                account,
                t,
            )
            for t in types
        ),
    )
    return RoleState(
        account=account,
        is_owner=bool(results[0]),
        is_attestor=bool(results[1]),
        attestation_flags={t: bool(flag) for t, flag in zip(types, results[2:])},
    )


async def load_profile(
    account: Optional[str],
    registry: Any,
    funding: Any,
    attestation: Any,
    token: Any = None,
    recognized_types: Iterable[str] = DEFAULT_ATTESTATION_TYPES,
) -> ProfileView:
    account = require_address(account, "account")
    balance_read = (
        _safe_read(f"token balance of {account}", None, token.balance_of, account)
        if token is not None
        else asyncio.sleep(0, result=None)
    )
    projects, roles, balance = await asyncio.gather(
        list_projects(registry, funding, account=account),
        resolve_roles(account, attestation, recognized_types),
        balance_read,
    )
    return ProfileView(
        account=account,
        roles=roles,
        owned_projects=tuple(p for p in projects if p.owned_by(account)),
        contributed_projects=tuple(p for p in projects if (p.your_contribution or 0) > 0),
        token_balance=parse_ledger_id(balance),
    )


# ── Filter/search ──


def project_matches(project: Project, term: Optional[str]) -> bool:
    if not project.name or not project.category:
        return False
    needle = (term or "").lower()
    return needle in project.name.lower() or needle in project.category.lower()


def search_projects(projects: Iterable[Project], term: Optional[str]) -> List[Project]:
    return [p for p in projects if project_matches(p, term)]


# ── Snapshot view store ──


@dataclass(frozen=True)
class ProjectView:
    seq: int = 0
    projects: Tuple[Project, ...] = ()
    fetched_at: int = 0


class ProjectViewStore:
    """Holds the current immutable project snapshot.

    Each refresh gets a sequence number; a result older than the snapshot already in
    place is discarded instead of overwriting it.
    """

    def __init__(self, loader: Callable[[], Awaitable[List[Project]]]):
        self._loader = loader
        self._next_seq = 0
        self.current = ProjectView()
        self.last_error: Optional[str] = None

    async def refresh(self) -> ProjectView:
        self._next_seq += 1
        seq = self._next_seq
        try:
            projects = await self._loader()
        except ReadError as e:
            if seq > self.current.seq:
                self.last_error = e.message
            raise
        view = ProjectView(seq=seq, projects=tuple(projects), fetched_at=int(time.time()))
        if seq > self.current.seq:
            self.current = view
            self.last_error = None
        else:
            logger.info("discarding stale project view seq=%d (current seq=%d)", seq, self.current.seq)
        return self.current


# ── Write orchestrator ──


class WriteState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"


@dataclass
class PendingWrite:
    operation: str
    state: WriteState = WriteState.IDLE
    tx_hash: Optional[str] = None
    message: Optional[str] = None

    def to_api(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "state": self.state.value,
            "txHash": self.tx_hash,
            "message": self.message,
        }


def _require_text(value: Any, label: str) -> str:
    text = "" if value is None else str(value).strip()
    if not text:
        raise ValidationError(f"{label} is required")
    return text


def _require_cid_list(value: Any, label: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValidationError(f"{label} must be a list of content identifiers")
    cids = [str(x).strip() for x in value]
    if any(not cid for cid in cids):
        raise ValidationError(f"{label} contains an empty content identifier")
    return cids


def attestation_binding_hash(type_name: str, recipient: str, timestamp_ms: int) -> bytes:
    """Opaque 32-byte tag binding type, recipient and submission time. Not a content hash."""
    return keccak(text=f"{type_name}{recipient}{timestamp_ms}")


def _short(address: str) -> str:
    return f"{address[:6]}..."


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class WriteOrchestrator:
    """Sequences validate -> submit -> await confirmation -> notify for every write.

    Ownership and attestor membership are enforced by the ledgers, not here; their
    rejections come back as ``WriteError``.
    """

    def __init__(
        self,
        registry: Any,
        funding: Any,
        attestation: Any,
        confirmer: Any,
        listener: Optional[Callable[[PendingWrite], Any]] = None,
        on_confirmed: Optional[Callable[[PendingWrite], Any]] = None,
        clock_ms: Callable[[], int] = lambda: int(time.time() * 1000),
    ):
        self.registry = registry
        self.funding = funding
        self.attestation = attestation
        self.confirmer = confirmer
        self.listener = listener
        self.on_confirmed = on_confirmed
        self.clock_ms = clock_ms

    @staticmethod
    def _begin(operation: str, ledger: Any, ledger_name: str) -> PendingWrite:
        if ledger is None:
            raise LedgerConnectionError(f"{ledger_name} is not connected")
        return PendingWrite(operation=operation, state=WriteState.VALIDATING)

    async def _notify(self, write: PendingWrite) -> None:
        if self.listener is not None:
            await _maybe_await(self.listener(replace(write)))

    async def _fail(self, write: PendingWrite, exc: BaseException) -> WriteError:
        write.state = WriteState.REVERTED
        write.message = extract_message(exc)
        logger.error("%s failed (tx=%s): %s", write.operation, write.tx_hash, write.message)
        await self._notify(write)
        return WriteError(write.message, write)

    async def _execute(
        self, write: PendingWrite, submit: Callable[[], Awaitable[str]], success_message: str
    ) -> PendingWrite:
        try:
            tx_hash = await submit()
        except LedgerConnectionError:
            raise
        except Exception as e:
            raise await self._fail(write, e) from e
        write.tx_hash = tx_hash
        write.state = WriteState.SUBMITTED
        logger.info("%s tx sent: %s", write.operation, tx_hash)
        await self._notify(write)

        try:
            await self.confirmer.wait_for_confirmation(tx_hash)
        except LedgerConnectionError as e:
            await self._fail(write, e)
            raise
        except Exception as e:
            raise await self._fail(write, e) from e
        write.state = WriteState.CONFIRMED
        write.message = success_message
        logger.info("%s confirmed: %s", write.operation, success_message)
        await self._notify(write)
        if self.on_confirmed is not None:
            try:
                await _maybe_await(self.on_confirmed(replace(write)))
            except Exception as e:
                logger.error("post-confirmation hook for %s failed: %s", write.operation, extract_message(e))
        return write

    async def submit_project(
        self,
        name: Any,
        category: Any,
        description_cid: Any,
        image_cids: Any = None,
        audio_cids: Any = None,
    ) -> PendingWrite:
        write = self._begin("submit_project", self.registry, "project registry")
        name = _require_text(name, "Project Name")
        category = _require_text(category, "Category")
        description_cid = _require_text(description_cid, "Description CID")
        images = _require_cid_list(image_cids, "Image CIDs")
        audios = _require_cid_list(audio_cids, "Audio CIDs")
        return await self._execute(
            write,
            lambda: self.registry.submit_project(name, description_cid, category, images, audios),
            "Project submitted successfully!",
        )

    async def add_attestor(self, address: Any) -> PendingWrite:
        write = self._begin("add_attestor", self.attestation, "attestation ledger")
        address = require_address(address, "attestor")
        return await self._execute(
            write,
            lambda: self.attestation.add_attestor(address),
            f"Attestor {_short(address)} added successfully!",
        )

    async def remove_attestor(self, address: Any) -> PendingWrite:
        write = self._begin("remove_attestor", self.attestation, "attestation ledger")
        address = require_address(address, "attestor")
        return await self._execute(
            write,
            lambda: self.attestation.remove_attestor(address),
            f"Attestor {_short(address)} removed successfully!",
        )

    async def issue_attestation(self, recipient: Any, type_name: Any) -> PendingWrite:
        write = self._begin("issue_attestation", self.attestation, "attestation ledger")
        recipient = require_address(recipient, "recipient")
        type_name = _require_text(type_name, "Attestation type")
        hash_token = attestation_binding_hash(type_name, recipient, self.clock_ms())
        return await self._execute(
            write,
            lambda: self.attestation.issue_attestation(recipient, type_name, hash_token),
            f"Attestation '{type_name}' issued to {_short(recipient)} successfully!",
        )

    async def contribute(self, project_id: Any, amount: Any) -> PendingWrite:
        write = self._begin("contribute", self.funding, "funding ledger")
        parsed_id = parse_ledger_id(project_id)
        if parsed_id is None:
            raise ValidationError(f"invalid project id: {project_id!r}")
        value = to_ledger_amount(amount)
        logger.warning(ALLOWANCE_NOTICE)
        return await self._execute(
            write,
            lambda: self.funding.contribute(parsed_id, value),
            f"Contributed {to_display_amount(value)} to project {parsed_id}",
        )


# ── Config ──


@dataclass
class AppConfig:
    chain_id: int
    http_rpc_url: str
    registry_addr: str
    funding_addr: str
    attestation_addr: str
    token_addr: str
    account: Optional[str]
    attestation_types: List[str]
    rpc_timeout_sec: int
    receipt_poll_ms: int
    receipt_timeout_sec: int
    log_level: str
    api_host: str
    api_port: int
    cors_allow_origins: List[str]


def _config_address(addresses: Dict[str, Any], key: str, chain_id: int) -> str:
    value = addresses.get(key)
    if not is_strict_address(value):
        raise ValueError(f"CONTRACT_ADDRESSES[{chain_id}].{key} is missing or invalid: {value}")
    return normalize_address(value)


def load_config(path: str) -> AppConfig:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)

    chain_id = int(raw.get("CHAIN_ID", 31337))
    http_rpc_url = str(raw["HTTP_RPC_URL"]).strip()
    if not http_rpc_url:
        raise ValueError("HTTP_RPC_URL cannot be empty")

    per_chain = raw.get("CONTRACT_ADDRESSES", {})
    addresses = per_chain.get(str(chain_id)) if isinstance(per_chain, dict) else None
    if not isinstance(addresses, dict):
        raise ValueError(f"CONTRACT_ADDRESSES has no entry for chain {chain_id}")

    account_raw = str(raw.get("ACCOUNT") or "").strip()
    if account_raw and not is_strict_address(account_raw):
        raise ValueError(f"ACCOUNT is not a valid address: {account_raw}")

    attestation_types = [
        str(x).strip() for x in raw.get("ATTESTATION_TYPES", DEFAULT_ATTESTATION_TYPES) if str(x).strip()
    ]
    if not attestation_types:
        raise ValueError("ATTESTATION_TYPES cannot be empty")

    receipt_poll_ms = int(raw.get("RECEIPT_POLL_MS", 1000))
    if receipt_poll_ms <= 0:
        raise ValueError("RECEIPT_POLL_MS must be >= 1")

    cors_allow_origins_raw = raw.get("CORS_ALLOW_ORIGINS", [])
    cors_allow_origins: List[str] = []
    if isinstance(cors_allow_origins_raw, str):
        cors_allow_origins = [
            x.strip().rstrip("/")
            for x in cors_allow_origins_raw.split(",")
            if x and x.strip()
        ]
    elif isinstance(cors_allow_origins_raw, list):
        cors_allow_origins = [
            str(x).strip().rstrip("/")
            for x in cors_allow_origins_raw
            if str(x).strip()
        ]

    return AppConfig(
        chain_id=chain_id,
        http_rpc_url=http_rpc_url,
        registry_addr=_config_address(addresses, "projectRegistry", chain_id),
        funding_addr=_config_address(addresses, "quadraticFunding", chain_id),
        attestation_addr=_config_address(addresses, "attestationService", chain_id),
        token_addr=_config_address(addresses, "token", chain_id),
        account=account_raw or None,
        attestation_types=attestation_types,
        rpc_timeout_sec=int(raw.get("RPC_TIMEOUT_SEC", 12)),
        receipt_poll_ms=receipt_poll_ms,
        receipt_timeout_sec=int(raw.get("RECEIPT_TIMEOUT_SEC", 0)),
        log_level=str(raw.get("LOG_LEVEL", "info")).lower(),
        api_host=str(raw.get("API_HOST", "127.0.0.1")),
        api_port=int(raw.get("API_PORT", 8080)),
        cors_allow_origins=cors_allow_origins,
    )


# ── Hub (API + lifecycle) ──


class CrowdfundHub:
    def __init__(
        self,
        cfg: AppConfig,
        registry: Any = None,
        funding: Any = None,
        attestation: Any = None,
        token: Any = None,
        confirmer: Any = None,
    ):
        self.cfg = cfg
        self.cors_allow_origins = {
            str(x).strip().rstrip("/") for x in cfg.cors_allow_origins if str(x).strip()
        }
        self.rpc = RPCClient(cfg.http_rpc_url, timeout_sec=cfg.rpc_timeout_sec)
        account = cfg.account
        self.registry = registry or ProjectRegistry(self.rpc, cfg.registry_addr, account)
        self.funding = funding or FundingLedger(self.rpc, cfg.funding_addr, account)
        self.attestation = attestation or AttestationLedger(self.rpc, cfg.attestation_addr, account)
        self.token = token or TokenLedger(self.rpc, cfg.token_addr, account)
        self.confirmer = confirmer or ReceiptWaiter(
            self.rpc,
            poll_sec=cfg.receipt_poll_ms / 1000.0,
            timeout_sec=cfg.receipt_timeout_sec,
        )
        self.views = ProjectViewStore(lambda: list_projects(self.registry, self.funding))
        self.orchestrator = WriteOrchestrator(
            self.registry,
            self.funding,
            self.attestation,
            self.confirmer,
            listener=self.on_write_event,
            on_confirmed=self.on_write_confirmed,
        )
        self.stop_event = asyncio.Event()
        self.stats: Dict[str, Any] = {
            "refreshes": 0,
            "read_errors": 0,
            "writes_submitted": 0,
            "writes_confirmed": 0,
            "writes_reverted": 0,
            "started_at": int(time.time()),
        }

    async def __aenter__(self) -> "CrowdfundHub":
        await self.rpc.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.rpc.__aexit__(exc_type, exc, tb)

    async def verify_chain(self) -> int:
        chain_id = await self.rpc.get_chain_id()
        if chain_id != self.cfg.chain_id:
            raise LedgerConnectionError(
                f"node at {self.cfg.http_rpc_url} is on chain {chain_id}, config expects {self.cfg.chain_id}"
            )
        return chain_id

    def on_write_event(self, write: PendingWrite) -> None:
        if write.state == WriteState.SUBMITTED:
            self.stats["writes_submitted"] += 1
        elif write.state == WriteState.CONFIRMED:
            self.stats["writes_confirmed"] += 1
        elif write.state == WriteState.REVERTED:
            self.stats["writes_reverted"] += 1

    async def on_write_confirmed(self, write: PendingWrite) -> None:
        try:
            await self.refresh_projects()
        except HubError as e:
            logger.error("refresh after %s failed: %s", write.operation, e.message)

    async def refresh_projects(self) -> ProjectView:
        self.stats["refreshes"] += 1
        try:
            return await self.views.refresh()
        except ReadError:
            self.stats["read_errors"] += 1
            raise

    async def load_profile(self, account: Optional[str]) -> ProfileView:
        return await load_profile(
            account,
            self.registry,
            self.funding,
            self.attestation,
            self.token,
            self.cfg.attestation_types,
        )

    async def health_handler(self, request: web.Request) -> web.Response:
        view = self.views.current
        return web.json_response(
            {
                "ok": True,
                "chainId": self.cfg.chain_id,
                "account": self.cfg.account,
                "projects": len(view.projects),
                "viewSeq": view.seq,
                "lastFetchedAt": view.fetched_at,
                "lastError": self.views.last_error,
                "stats": dict(self.stats),
            }
        )

    async def projects_handler(self, request: web.Request) -> web.Response:
        refresh = str(request.query.get("refresh", "")).strip().lower() in {"1", "true", "yes"}
        view = self.views.current
        if refresh or view.seq == 0:
            try:
                view = await self.refresh_projects()
            except ReadError as e:
                return web.json_response(
                    {"error": f"Error fetching projects: {e.message}", "count": 0, "items": []},
                    status=502,
                )
            except LedgerConnectionError as e:
                return web.json_response({"error": e.message}, status=503)
        items = search_projects(view.projects, request.query.get("q", ""))
        return web.json_response(
            {
                "count": len(items),
                "total": len(view.projects),
                "seq": view.seq,
                "items": [p.to_api() for p in items],
            }
        )

    async def profile_handler(self, request: web.Request) -> web.Response:
        account = request.query.get("account") or self.cfg.account
        try:
            profile = await self.load_profile(account)
        except ValidationError as e:
            return web.json_response({"error": e.message}, status=400)
        except ReadError as e:
            return web.json_response({"error": f"Error loading profile: {e.message}"}, status=502)
        except LedgerConnectionError as e:
            return web.json_response({"error": e.message}, status=503)
        return web.json_response(profile.to_api())

    async def roles_handler(self, request: web.Request) -> web.Response:
        account = request.query.get("account") or self.cfg.account
        if account and not is_strict_address(account):
            return web.json_response({"error": f"Invalid Ethereum address: {account}"}, status=400)
        roles = await resolve_roles(account, self.attestation, self.cfg.attestation_types)
        return web.json_response(roles.to_api())

    async def _run_write(
        self, start: Callable[[], Awaitable[PendingWrite]], extra: Optional[Dict[str, Any]] = None
    ) -> web.Response:
        try:
            write = await start()
        except ValidationError as e:
            return web.json_response({"error": e.message}, status=400)
        except WriteError as e:
            body: Dict[str, Any] = {"error": e.message}
            if e.write is not None:
                body["write"] = e.write.to_api()
            return web.json_response(body, status=409)
        except LedgerConnectionError as e:
            return web.json_response({"error": e.message}, status=503)
        body = {"ok": True, "write": write.to_api()}
        if extra:
            body.update(extra)
        return web.json_response(body)

    async def _json_body(self, request: web.Request) -> Optional[Dict[str, Any]]:
        try:
            payload = await request.json()
        except Exception:
            return None
        return payload if isinstance(payload, dict) else None

    async def submit_project_handler(self, request: web.Request) -> web.Response:
        payload = await self._json_body(request)
        if payload is None:
            return web.json_response({"error": "invalid json body"}, status=400)
        return await self._run_write(
            lambda: self.orchestrator.submit_project(
                payload.get("name"),
                payload.get("category"),
                payload.get("descriptionCID"),
                payload.get("imageCIDs"),
                payload.get("audioCIDs"),
            )
        )

    async def attestor_add_handler(self, request: web.Request) -> web.Response:
        payload = await self._json_body(request)
        if payload is None:
            return web.json_response({"error": "invalid json body"}, status=400)
        return await self._run_write(lambda: self.orchestrator.add_attestor(payload.get("address")))

    async def attestor_remove_handler(self, request: web.Request) -> web.Response:
        address = str(request.match_info.get("address", "")).strip()
        return await self._run_write(lambda: self.orchestrator.remove_attestor(address))

    async def attestation_issue_handler(self, request: web.Request) -> web.Response:
        payload = await self._json_body(request)
        if payload is None:
            return web.json_response({"error": "invalid json body"}, status=400)
        return await self._run_write(
            lambda: self.orchestrator.issue_attestation(payload.get("recipient"), payload.get("type"))
        )

    async def contribution_handler(self, request: web.Request) -> web.Response:
        payload = await self._json_body(request)
        if payload is None:
            return web.json_response({"error": "invalid json body"}, status=400)
        return await self._run_write(
            lambda: self.orchestrator.contribute(payload.get("projectId"), payload.get("amount")),
            extra={"notice": ALLOWANCE_NOTICE},
        )

    def resolve_cors_origin(self, request_origin: Optional[str]) -> Optional[str]:
        if not request_origin or not self.cors_allow_origins:
            return None
        origin = str(request_origin).strip().rstrip("/")
        if not origin:
            return None
        if "*" in self.cors_allow_origins:
            return "*"
        if origin in self.cors_allow_origins:
            return origin
        return None

    async def create_api_app(self) -> web.Application:
        @web.middleware
        async def cors_middleware(request: web.Request, handler):
            allow_origin = self.resolve_cors_origin(request.headers.get("Origin"))
            if request.method == "OPTIONS":
                response: web.StreamResponse = web.Response(status=204)
            else:
                try:
                    response = await handler(request)
                except web.HTTPException as ex:
                    response = ex

            if allow_origin:
                response.headers["Access-Control-Allow-Origin"] = allow_origin
                response.headers["Vary"] = "Origin"
                response.headers["Access-Control-Allow-Methods"] = "GET,POST,DELETE,OPTIONS"
                response.headers["Access-Control-Allow-Headers"] = "Content-Type,Authorization"
                response.headers["Access-Control-Max-Age"] = "86400"
            return response

        middlewares = [cors_middleware] if self.cors_allow_origins else []
        app = web.Application(middlewares=middlewares)
        app.router.add_get("/health", self.health_handler)
        app.router.add_get("/projects", self.projects_handler)
        app.router.add_post("/projects", self.submit_project_handler)
        app.router.add_get("/profile", self.profile_handler)
        app.router.add_get("/roles", self.roles_handler)
        app.router.add_post("/attestors", self.attestor_add_handler)
        app.router.add_delete("/attestors/{address}", self.attestor_remove_handler)
        app.router.add_post("/attestations", self.attestation_issue_handler)
        app.router.add_post("/contributions", self.contribution_handler)
        return app

    async def run(self) -> None:
        app = await self.create_api_app()
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, host=self.cfg.api_host, port=self.cfg.api_port)
        await site.start()
        logger.info("API listening on http://%s:%d", self.cfg.api_host, self.cfg.api_port)
        try:
            await self.stop_event.wait()
        finally:
            await runner.cleanup()

    def shutdown(self) -> None:
        self.stop_event.set()


async def main_async(
    config_path: str, command: str, search: str = "", account: Optional[str] = None
) -> None:
    cfg = load_config(config_path)
    configure_logging(cfg.log_level)
    async with CrowdfundHub(cfg) as hub:
        await hub.verify_chain()
        if command == "projects":
            view = await hub.refresh_projects()
            items = search_projects(view.projects, search)
            print(json.dumps([p.to_api() for p in items], ensure_ascii=False, indent=2))
            return
        if command == "profile":
            profile = await hub.load_profile(account or cfg.account)
            print(json.dumps(profile.to_api(), ensure_ascii=False, indent=2))
            return

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, hub.shutdown)
        await hub.run()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Tuko Pamoja crowdfunding hub: project aggregation and write orchestration"
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="serve",
        choices=["serve", "projects", "profile"],
        help="serve the HTTP API, or print projects / a profile once",
    )
    parser.add_argument(
        "--config",
        default="./config.json",
        help="config file path (default: ./config.json)",
    )
    parser.add_argument("--search", default="", help="filter projects by name or category")
    parser.add_argument("--account", default=None, help="account for the profile command")
    args = parser.parse_args()

    try:
        asyncio.run(main_async(args.config, args.command, args.search, args.account))
    except KeyboardInterrupt:
        pass
    except HubError as e:
        raise SystemExit(f"{type(e).__name__}: {e.message}") from e


if __name__ == "__main__":
    main()
