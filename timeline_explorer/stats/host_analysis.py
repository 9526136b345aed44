"""
Row-level reconstructions over Windows event and registry exports: process
trees, logon graphs between hosts and persistence findings.

The builders here take rows already fetched under the active filters, as
``(row_key, {role: value})`` pairs, so they can be exercised without a store.
"""

import re
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .persistence_rules import (
    ENCODING_INDICATORS,
    EVENT_RULES,
    GUID_TASK,
    KNOWN_TOOLS,
    LEGIT_TASK_PREFIXES,
    LOLBINS,
    REGISTRY_RULES,
    RMM_TOOLS,
    SEVERITY_SCORES,
    SUSPICIOUS_COMMANDS,
    SUSPICIOUS_PATHS,
    USER_WRITABLE,
)

Row = Tuple[int, Dict[str, str]]

PROCESS_COLUMNS = {
    "pid": ("ProcessId", "pid", "process_id", "NewProcessId"),
    "ppid": ("ParentProcessId", "ppid", "parent_process_id", "parent_pid", "CreatorProcessId"),
    "guid": ("ProcessGuid", "process_guid"),
    "parent_guid": ("ParentProcessGuid", "parent_process_guid"),
    "image": ("Image", "process_name", "exe", "FileName", "ImagePath", "NewProcessName"),
    "parent_image": ("ParentImage", "ParentProcessName"),
    "command_line": ("CommandLine", "command_line", "cmd", "cmdline", "ProcessCommandLine"),
    "user": ("User", "UserName", "user_name", "SubjectUserName", "TargetUserName"),
    "ts": ("UtcTime", "datetime", "TimeCreated", "timestamp"),
    "event_id": ("EventID", "event_id"),
    "elevation": ("TokenElevationType", "Token_Elevation_Type"),
    "integrity": ("MandatoryLabel", "Mandatory_Label", "IntegrityLevel"),
}

LATERAL_COLUMNS = {
    "source": ("IpAddress", "SourceNetworkAddress", "SourceAddress", "Source_Network_Address", "RemoteHost"),
    "workstation": ("WorkstationName", "Workstation_Name", "SourceHostname", "SourceComputerName"),
    "target": ("Computer", "ComputerName", "computer_name", "Hostname"),
    "user": ("TargetUserName", "Target_User_Name", "UserName"),
    "logon_type": ("LogonType", "Logon_Type"),
    "event_id": ("EventID", "event_id"),
    "ts": ("datetime", "UtcTime", "TimeCreated", "timestamp"),
    "domain": ("TargetDomainName", "Target_Domain_Name", "SubjectDomainName"),
    "client_name": ("ClientName", "Client_Name"),
    "client_address": ("ClientAddress", "Client_Address", "ClientIP"),
}

EVENT_LOG_COLUMNS = {
    "event_id": ("EventID", "event_id"),
    "channel": ("Channel", "SourceName", "Provider"),
    "ts": ("TimeCreated", "datetime", "UtcTime", "Timestamp"),
    "computer": ("Computer", "ComputerName", "Hostname"),
    "user": ("UserName", "User"),
    "payload1": ("PayloadData1",),
    "payload2": ("PayloadData2",),
    "payload3": ("PayloadData3",),
    "payload4": ("PayloadData4",),
    "payload5": ("PayloadData5",),
    "payload6": ("PayloadData6",),
    "map_description": ("MapDescription",),
    "executable": ("ExecutableInfo",),
    "details": ("Details",),
    "rule_title": ("RuleTitle",),
}

PAYLOAD_ROLES = (
    "payload1",
    "payload2",
    "payload3",
    "payload4",
    "payload5",
    "payload6",
    "map_description",
    "executable",
    "details",
    "rule_title",
)

# Rows without payload columns carry every other column under this prefix
FIELD_ROLE_PREFIX = "field:"

REGISTRY_COLUMNS = {
    "key_path": ("KeyPath", "Key Path"),
    "value_name": ("ValueName", "Value Name"),
    "value_data": ("ValueData", "Value Data"),
    "value_data2": ("ValueData2",),
    "value_data3": ("ValueData3",),
    "value_type": ("ValueType", "Value Type"),
    "hive_path": ("HivePath", "Hive Path"),
    "ts": ("LastWriteTimestamp", "Timestamp", "datetime", "TimeCreated"),
}

LOGON_EVENT_IDS = ("4624", "4625", "4648", "4778")
EXCLUDED_SOURCES = frozenset(("-", "::1", "127.0.0.1", "0.0.0.0", ""))
SERVICE_ACCOUNT = re.compile(
    r"^(SYSTEM|LOCAL SERVICE|NETWORK SERVICE|DWM-\d+|UMFD-\d+|ANONYMOUS LOGON)$", re.IGNORECASE
)
HEX_PID = re.compile(r"^0x[0-9a-f]+$", re.IGNORECASE)

OUTLIER_HOSTNAMES = (
    (re.compile(r"^DESKTOP-[A-Z0-9]{5,}$"), "Default Windows hostname"),
    (re.compile(r"^WIN-[A-Z0-9]{5,}$"), "Default Windows hostname"),
    (re.compile(r"^KALI$", re.IGNORECASE), "Kali Linux default"),
    (re.compile(r"^PARROT$", re.IGNORECASE), "Parrot OS default"),
    (
        re.compile(
            r"^(USER-?PC|YOURNAME|ADMIN|TEST|PC|WIN10|WIN11|OWNER-?PC|USER|WINDOWS|LOCALHOST"
            r"|HACKER|ATTACKER|ROOT)$",
            re.IGNORECASE,
        ),
        "Generic hostname",
    ),
    (re.compile(r"[^\x00-\x7F]"), "Non-ASCII hostname"),
)

MAX_CHAINS = 50
MIN_CHAIN_HOPS = 2


@dataclass
class ProcessNode:
    key: str
    parent_key: str
    row_key: int
    pid: str = ""
    ppid: str = ""
    guid: str = ""
    parent_guid: str = ""
    image: str = ""
    process_name: str = ""
    parent_image: str = ""
    command_line: str = ""
    user: str = ""
    timestamp: str = ""
    elevation: str = ""
    integrity: str = ""
    child_count: int = 0
    depth: int = 0


@dataclass
class ProcessTreeResult:
    processes: List[ProcessNode] = field(default_factory=list)
    columns: Dict[str, str] = field(default_factory=dict)
    use_guid: bool = False
    total_processes: int = 0
    root_count: int = 0
    max_depth: int = 0
    truncated: bool = False
    error: Optional[str] = None


@dataclass
class HostNode:
    id: str
    event_count: int = 0
    is_source: bool = False
    is_target: bool = False
    is_outlier: bool = False
    outlier_reason: str = ""


@dataclass
class LateralEdge:
    source: str
    target: str
    count: int = 0
    users: List[str] = field(default_factory=list)
    logon_types: List[str] = field(default_factory=list)
    first_seen: str = ""
    last_seen: str = ""
    has_failures: bool = False
    client_names: List[str] = field(default_factory=list)
    client_addresses: List[str] = field(default_factory=list)


@dataclass
class LateralChain:
    path: List[str]
    timestamps: List[str]
    users: List[str]
    hops: int


@dataclass
class LateralMovementResult:
    nodes: List[HostNode] = field(default_factory=list)
    edges: List[LateralEdge] = field(default_factory=list)
    chains: List[LateralChain] = field(default_factory=list)
    columns: Dict[str, str] = field(default_factory=dict)
    total_events: int = 0
    unique_users: int = 0
    failed_logons: int = 0
    longest_chain: int = 0
    truncated: bool = False
    error: Optional[str] = None


@dataclass
class PersistenceItem:
    row_key: int
    category: str
    name: str
    severity: str
    source: str
    timestamp: str = ""
    computer: str = ""
    user: str = ""
    details: Dict[str, str] = field(default_factory=dict)
    summary: str = ""
    artifact: str = ""
    command: str = ""
    risk_score: int = 0
    is_suspicious: bool = False
    suspicious_reasons: List[str] = field(default_factory=list)
    rmm_tool: bool = False


@dataclass
class PersistenceResult:
    items: List[PersistenceItem] = field(default_factory=list)
    mode: Optional[str] = None
    columns: Dict[str, str] = field(default_factory=dict)
    by_category: Dict[str, int] = field(default_factory=dict)
    by_severity: Dict[str, int] = field(default_factory=dict)
    suspicious: int = 0
    truncated: bool = False
    error: Optional[str] = None


# Process tree


def decimal_pid(value: str) -> str:
    """Security 4688 logs hex process ids (``0x1a2c``); Sysmon logs decimal."""
    value = (value or "").strip()
    if HEX_PID.match(value):
        return str(int(value, 16))
    return value


def image_basename(path: str) -> str:
    return re.split(r"[\\/]", path or "")[-1] or "(unknown)"


def build_process_tree(rows: Sequence[Row], use_guid: bool) -> List[ProcessNode]:
    """
    Link process creation rows to their parents, then fill in child counts and
    BFS depth from the roots.

    With GUID columns the GUIDs are the keys. Otherwise a node's key is its pid
    plus row key, and its parent is the latest earlier process with that pid.
    """
    processes = []
    by_key = {}
    children = defaultdict(list)
    latest_by_pid = {}

    for row_key, values in rows:
        pid = decimal_pid(values.get("pid", ""))
        ppid = decimal_pid(values.get("ppid", ""))
        guid = values.get("guid", "").strip()
        parent_guid = values.get("parent_guid", "").strip()

        key = guid if use_guid and guid else f"pid:{pid}:{row_key}"
        if use_guid and parent_guid:
            parent_key = parent_guid
        else:
            parent_key = latest_by_pid.get(ppid, f"pid:{ppid}")
        if pid:
            latest_by_pid[pid] = key

        image = values.get("image", "")
        node = ProcessNode(
            key=key,
            parent_key=parent_key,
            row_key=row_key,
            pid=pid,
            ppid=ppid,
            guid=guid,
            parent_guid=parent_guid,
            image=image,
            process_name=image_basename(image),
            parent_image=values.get("parent_image", ""),
            command_line=values.get("command_line", ""),
            user=values.get("user", ""),
            timestamp=values.get("ts", ""),
            elevation=values.get("elevation", ""),
            integrity=values.get("integrity", ""),
        )
        processes.append(node)
        by_key[key] = node
        children[parent_key].append(key)

    for node in processes:
        node.child_count = len(children.get(node.key, ()))

    roots = [node for node in processes if node.parent_key not in by_key]
    queue = deque((node.key, 0) for node in roots)
    visited = set()
    while queue:
        key, depth = queue.popleft()
        if key in visited:
            continue
        visited.add(key)
        by_key[key].depth = depth
        queue.extend((child, depth + 1) for child in children.get(key, ()))
    return processes


# Lateral movement


def outlier_reason(hostname: str) -> str:
    for pattern, reason in OUTLIER_HOSTNAMES:
        if pattern.search(hostname):
            return reason
    return ""


def _add_unique(values: List[str], value: str):
    if value and value not in values:
        values.append(value)


def _logon_source(values: Dict[str, str], event_id: str) -> Tuple[str, str, str]:
    """Source host of a logon event plus the RDP client name and address, if any."""
    if event_id == "4778":
        client_name = values.get("client_name", "").strip()
        client_address = values.get("client_address", "").strip()
        return (client_name or client_address).upper(), client_name, client_address
    source = values.get("workstation", "").strip().upper()
    if not source or source == "-":
        source = values.get("source", "").strip().upper()
    return source, "", ""


def build_lateral_graph(
    rows: Sequence[Row], exclude_local=True, exclude_service_accounts=True
) -> LateralMovementResult:
    """Aggregate time-ordered logon rows into host nodes, edges and multi-hop chains."""
    hosts: Dict[str, HostNode] = {}
    edges: Dict[Tuple[str, str], LateralEdge] = {}
    hops = []
    users = set()
    failed = 0

    for _, values in rows:
        target = values.get("target", "").strip().upper()
        if not target:
            continue
        event_id = values.get("event_id", "").strip()
        source, client_name, client_address = _logon_source(values, event_id)
        if source in EXCLUDED_SOURCES:
            continue
        if exclude_local and source == target:
            continue
        user = values.get("user", "").strip()
        if exclude_service_accounts and user and (SERVICE_ACCOUNT.match(user) or user.endswith("$")):
            continue
        logon_type = values.get("logon_type", "").strip()
        ts = values.get("ts", "")

        for host, is_source in ((source, True), (target, False)):
            node = hosts.get(host)
            if node is None:
                reason = outlier_reason(host)
                node = hosts[host] = HostNode(host, is_outlier=bool(reason), outlier_reason=reason)
            node.event_count += 1
            if is_source:
                node.is_source = True
            else:
                node.is_target = True

        edge = edges.get((source, target))
        if edge is None:
            edge = edges[(source, target)] = LateralEdge(source, target, first_seen=ts, last_seen=ts)
        edge.count += 1
        _add_unique(edge.users, user)
        _add_unique(edge.logon_types, logon_type)
        if ts and (not edge.first_seen or ts < edge.first_seen):
            edge.first_seen = ts
        if ts and ts > edge.last_seen:
            edge.last_seen = ts
        if event_id == "4625":
            edge.has_failures = True
            failed += 1
        _add_unique(edge.client_names, client_name)
        if client_address != "LOCAL":
            _add_unique(edge.client_addresses, client_address)

        if user:
            users.add(user)
        hops.append((source, target, ts, user))

    origins = [host for host, node in hosts.items() if node.is_source]
    chains = find_chains(hops, origins)
    return LateralMovementResult(
        nodes=list(hosts.values()),
        edges=list(edges.values()),
        chains=chains,
        total_events=len(hops),
        unique_users=len(users),
        failed_logons=failed,
        longest_chain=chains[0].hops if chains else 0,
    )


def find_chains(hops, origins, max_chains=MAX_CHAINS, min_hops=MIN_CHAIN_HOPS) -> List[LateralChain]:
    """
    Depth-first walk over ``(source, target, ts, user)`` hops in time order.

    A path only extends through a hop no earlier than the one before it and
    never revisits a host. Paths that cannot extend and have at least
    ``min_hops`` hops become chains, longest first.
    """
    adjacency = defaultdict(list)
    for source, target, ts, user in hops:
        adjacency[source].append((target, ts, user))

    chains = []
    for origin in origins:
        if len(chains) >= max_chains:
            break
        stack = [((origin, "", ""),)]
        while stack and len(chains) < max_chains:
            path = stack.pop()
            host, last_ts, _ = path[-1]
            visited = {step[0] for step in path}
            # Earliest usable hop per next host
            nexts = {}
            for target, ts, user in adjacency.get(host, ()):
                if target in visited or target in nexts:
                    continue
                if last_ts and ts and ts < last_ts:
                    continue
                nexts[target] = (target, ts, user)
            for step in nexts.values():
                stack.append(path + (step,))
            if not nexts and len(path) - 1 >= min_hops:
                chains.append(
                    LateralChain(
                        path=[step[0] for step in path],
                        timestamps=[step[1] for step in path],
                        users=list(dict.fromkeys(step[2] for step in path[1:] if step[2])),
                        hops=len(path) - 1,
                    )
                )
    chains.sort(key=lambda chain: chain.hops, reverse=True)
    return chains


# Persistence


def payload_text(values: Dict[str, str]) -> str:
    parts = [values.get(role, "") for role in PAYLOAD_ROLES]
    parts.extend(
        f"{role[len(FIELD_ROLE_PREFIX):]}: {value}"
        for role, value in values.items()
        if role.startswith(FIELD_ROLE_PREFIX) and value
    )
    return " | ".join(p for p in parts if p)


def _extract(rule, haystack, values) -> Dict[str, str]:
    details = {}
    for name, patterns in rule.extractors.items():
        for pattern in patterns:
            match = pattern.search(haystack)
            if match:
                details[name] = match.group(1).strip()
                break
    executable = values.get("executable", "").strip()
    if rule.executable_field and executable and rule.executable_field not in details:
        details[rule.executable_field] = executable
    return details


def _summary(details, haystack, limit=400) -> str:
    parts = [f"{name}: {value}" for name, value in details.items() if value]
    return (" | ".join(parts) if parts else haystack)[:limit]


def scan_event_rows(rows: Sequence[Row], rules=EVENT_RULES) -> List[PersistenceItem]:
    """Match event log rows against the persistence rules by event id, channel and payload."""
    items = []
    for row_key, values in rows:
        event_id = values.get("event_id", "").strip()
        channel = values.get("channel", "").lower()
        haystack = payload_text(values)
        for rule in rules:
            if event_id not in rule.event_ids:
                continue
            if channel and rule.channels and not any(c in channel for c in rule.channels):
                continue
            if rule.payload_filter is not None and not rule.payload_filter.search(haystack):
                continue
            details = _extract(rule, haystack, values)
            rmm = event_id == "7045" and any(
                RMM_TOOLS.search(details.get(k, "")) for k in ("serviceName", "imagePath")
            )
            items.append(
                PersistenceItem(
                    row_key=row_key,
                    category=rule.category,
                    name=rule.name,
                    severity=rule.severity,
                    source=f"EventID {event_id}",
                    timestamp=values.get("ts", ""),
                    computer=values.get("computer", ""),
                    user=values.get("user", ""),
                    details=details,
                    summary=_summary(details, haystack),
                    rmm_tool=rmm,
                )
            )
    _link_task_executables(items)
    for item in items:
        d = item.details
        item.artifact = (
            d.get("taskName") or d.get("serviceName") or d.get("targetObject")
            or d.get("targetFilename") or d.get("name") or d.get("imageLoaded") or ""
        )
        item.command = (
            d.get("executable") or d.get("command") or d.get("serviceFile") or d.get("imagePath")
            or d.get("image") or d.get("query") or d.get("destination") or d.get("details") or ""
        )
    return items


def _link_task_executables(items):
    """Registered/updated tasks borrow the executable seen when the same task ran."""
    executables = {}
    for item in items:
        task = item.details.get("taskName")
        executable = item.details.get("executable")
        if item.name in ("Task Process Created", "Task Action Started") and task and executable:
            if task not in executables or item.name == "Task Process Created":
                executables[task] = executable
    for item in items:
        task = item.details.get("taskName")
        if item.name in ("Task Registered", "Task Updated") and task in executables:
            if not item.details.get("executable"):
                item.details["executable"] = executables[task]
                item.summary = _summary(
                    {"taskName": task, "executable": executables[task]}, ""
                )


def scan_registry_rows(rows: Sequence[Row], rules=REGISTRY_RULES) -> List[PersistenceItem]:
    items = []
    for row_key, values in rows:
        key_path = values.get("key_path", "")
        value_name = values.get("value_name", "")
        value_data = " ".join(
            v for v in (values.get(r, "") for r in ("value_data", "value_data2", "value_data3")) if v
        )
        for rule in rules:
            if not rule.key_path.search(key_path):
                continue
            if rule.value_name is not None and not rule.value_name.search(value_name):
                continue
            items.append(
                PersistenceItem(
                    row_key=row_key,
                    category=rule.category,
                    name=rule.name,
                    severity=rule.severity,
                    source="Registry",
                    timestamp=values.get("ts", ""),
                    details={
                        "keyPath": key_path,
                        "valueName": value_name,
                        "valueData": value_data,
                        "hivePath": values.get("hive_path", ""),
                    },
                    summary=f"{value_name}: {value_data}"[:300],
                    artifact=key_path,
                    command=value_data,
                )
            )
    return items


def score_items(items: List[PersistenceItem]) -> List[PersistenceItem]:
    """Attach a 0-10 risk score and suspicion reasons, highest risk first."""
    for item in items:
        score = SEVERITY_SCORES.get(item.severity, 4)
        blob = " ".join([item.summary] + list(item.details.values()))
        for pattern in (SUSPICIOUS_PATHS, SUSPICIOUS_COMMANDS, ENCODING_INDICATORS):
            if pattern.search(blob):
                score += 1

        reasons = []
        artifact = item.artifact
        if item.category == "Services" and artifact:
            for pattern, severity, reason in KNOWN_TOOLS:
                if pattern.search(artifact):
                    item.severity = severity
                    score = max(score, SEVERITY_SCORES[severity])
                    reasons.append(reason)
        if item.rmm_tool:
            reasons.append("Remote management tool installed as a service")

        standard_task = bool(LEGIT_TASK_PREFIXES.search(artifact))
        if artifact and item.category == "Scheduled Tasks":
            if artifact.startswith("\\") and not standard_task:
                reasons.append("Non-standard task path")
                score += 1
            if GUID_TASK.search(artifact):
                reasons.append("GUID-named task")
                score += 1
        if item.command and artifact and LOLBINS.search(item.command) and not standard_task:
            reasons.append("LOLBin execution")
        if item.command and USER_WRITABLE.search(item.command):
            reasons.append("User-writable path")
        if item.name == "Task Deleted" and artifact and not standard_task:
            reasons.append("Non-standard task deleted")
            score += 1

        item.risk_score = min(score, 10)
        item.suspicious_reasons = reasons
        item.is_suspicious = bool(reasons)

    items.sort(key=lambda item: (-item.risk_score, item.timestamp))
    return items


def summarize_items(items: List[PersistenceItem]) -> Tuple[Dict[str, int], Dict[str, int]]:
    by_category: Dict[str, int] = {}
    by_severity = {"critical": 0, "high": 0, "medium": 0, "low": 0}
    for item in items:
        by_category[item.category] = by_category.get(item.category, 0) + 1
        by_severity[item.severity] = by_severity.get(item.severity, 0) + 1
    return by_category, by_severity
