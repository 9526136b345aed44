import re
from dataclasses import dataclass, field
from typing import Dict, Optional, Pattern, Tuple

SEVERITY_SCORES = {"critical": 8, "high": 6, "medium": 4, "low": 2}

SUSPICIOUS_PATHS = re.compile(
    r"\\(?:Temp|AppData|Downloads|Users\\Public|ProgramData\\[^\\]*$|Recycle)", re.IGNORECASE
)
SUSPICIOUS_COMMANDS = re.compile(
    r"(?:powershell|pwsh|cmd\.exe\s*/c|certutil|bitsadmin|mshta|regsvr32|wscript|cscript"
    r"|rundll32|msiexec.*/q)",
    re.IGNORECASE,
)
ENCODING_INDICATORS = re.compile(
    r"(?:base64|frombase64|-[eE]nc\s|-[eE]\s|iex|invoke-expression|downloadstring"
    r"|downloadfile|webclient|bitstransfer)",
    re.IGNORECASE,
)
LOLBINS = re.compile(r"powershell|pwsh|cmd\.exe|mshta|wscript|cscript", re.IGNORECASE)
USER_WRITABLE = re.compile(r"\\Users\\|\\Temp\\|\\AppData\\|\\Downloads\\|\\Public\\", re.IGNORECASE)
LEGIT_TASK_PREFIXES = re.compile(r"^\\(?:Microsoft\\|Apple\\|Google\\|Adobe\\|Mozilla\\)", re.IGNORECASE)
GUID_TASK = re.compile(r"^\\\{[0-9a-f-]+\}$", re.IGNORECASE)
RMM_TOOLS = re.compile(
    r"anydesk|splashtop|rustdesk|atera|screenconnect|teamviewer|supremo|connectwise|bomgar|logmein",
    re.IGNORECASE,
)

# Service names that raise an item's severity whatever its rule says
KNOWN_TOOLS = (
    (re.compile(r"^PSEXE[SC]SVC$", re.IGNORECASE), "critical", "PsExec remote execution service"),
    (
        re.compile(
            r"^(?:DVCEMUMANAGER|anydesk|TeamViewer|ScreenConnect|SimpleHelp|RustDesk|meshagent)$",
            re.IGNORECASE,
        ),
        "high",
        "Remote access tool",
    ),
)


def payload_field(*keys) -> Tuple[Pattern, ...]:
    """Patterns pulling ``Key: value`` out of a ``|``-joined payload."""
    return tuple(
        re.compile(re.escape(key) + r":\s*(.+?)(?:\s*$|\s*\|)", re.IGNORECASE) for key in keys
    )


TASK_NAME = payload_field("Task", "TaskName", "Task Name", "Name")


@dataclass(frozen=True)
class EventRule:
    category: str
    name: str
    event_ids: Tuple[str, ...]
    channels: Tuple[str, ...]
    severity: str
    extractors: Dict[str, Tuple[Pattern, ...]] = field(default_factory=dict)
    payload_filter: Optional[Pattern] = None
    # Detail field filled from the executable column when the payload lacks it
    executable_field: Optional[str] = None


@dataclass(frozen=True)
class RegistryRule:
    category: str
    name: str
    severity: str
    key_path: Pattern
    value_name: Optional[Pattern] = None


def _rx(pattern):
    return re.compile(pattern, re.IGNORECASE)


EVENT_RULES = (
    EventRule(
        "Services", "Service Installed", ("7045",), ("system",), "high",
        {
            "serviceName": payload_field("Name", "ServiceName"),
            "startType": payload_field("StartType"),
            "account": payload_field("Account", "AccountName"),
        },
        executable_field="imagePath",
    ),
    EventRule(
        "Services", "Service Installed", ("4697",), ("security",), "high",
        {
            "serviceName": payload_field("ServiceName"),
            "serviceFile": payload_field("ServiceFileName"),
            "account": payload_field("ServiceAccount"),
        },
    ),
    EventRule(
        "Scheduled Tasks", "Scheduled Task Created", ("4698",), ("security",), "high",
        {"taskName": TASK_NAME, "command": payload_field("Command", "Arguments", "Actions")},
        executable_field="executable",
    ),
    EventRule(
        "Scheduled Tasks", "Scheduled Task Deleted", ("4699",), ("security",), "medium",
        {"taskName": TASK_NAME},
    ),
    EventRule(
        "Scheduled Tasks", "Task Registered", ("106",), ("taskscheduler",), "medium",
        {"taskName": TASK_NAME},
    ),
    EventRule(
        "Scheduled Tasks", "Task Updated", ("140",), ("taskscheduler",), "medium",
        {"taskName": TASK_NAME},
    ),
    EventRule(
        "Scheduled Tasks", "Task Process Created", ("129",), ("taskscheduler",), "high",
        {"taskName": TASK_NAME, "processId": payload_field("ProcessID", "ProcessId")},
        executable_field="executable",
    ),
    EventRule(
        "Scheduled Tasks", "Task Action Started", ("200",), ("taskscheduler",), "medium",
        {"taskName": TASK_NAME},
        executable_field="executable",
    ),
    EventRule(
        "Scheduled Tasks", "Task Deleted", ("141",), ("taskscheduler",), "high",
        {"taskName": TASK_NAME, "userName": payload_field("UserName", "User")},
    ),
    EventRule(
        "Scheduled Tasks", "Boot Trigger Fired", ("118",), ("taskscheduler",), "medium",
        {"taskName": TASK_NAME},
    ),
    EventRule(
        "Scheduled Tasks", "Logon Trigger Fired", ("119",), ("taskscheduler",), "medium",
        {"taskName": TASK_NAME, "userName": payload_field("UserName", "User")},
    ),
    EventRule(
        "WMI Persistence", "WMI Event Subscription", ("5861",), ("wmi-activity",), "critical",
        {
            "operation": payload_field("Operation"),
            "query": payload_field("Query"),
            "consumer": payload_field("Consumer"),
        },
    ),
    EventRule(
        "WMI Persistence", "WMI EventFilter Created", ("19",), ("sysmon",), "critical",
        {"name": payload_field("Name"), "query": payload_field("Query")},
    ),
    EventRule(
        "WMI Persistence", "WMI EventConsumer Created", ("20",), ("sysmon",), "critical",
        {"name": payload_field("Name"), "destination": payload_field("Destination")},
    ),
    EventRule(
        "WMI Persistence", "WMI Binding Created", ("21",), ("sysmon",), "critical",
        {"consumer": payload_field("Consumer"), "filter": payload_field("Filter")},
    ),
    EventRule(
        "Registry Autorun", "Registry Value Set", ("13",), ("sysmon",), "high",
        {
            "targetObject": payload_field("TargetObject", "TgtObj"),
            "details": payload_field("Details"),
            "image": payload_field("Image"),
        },
        payload_filter=_rx(
            r"\\(?:Run|RunOnce|RunServices|Services\\[^\\]*\\(?:ImagePath|Parameters)"
            r"|Winlogon\\(?:Shell|Userinit|Notify)|AppInit_DLLs"
            r"|Image File Execution Options\\[^\\]*\\Debugger"
            r"|CurrentVersion\\Explorer\\(?:Shell|User Shell)"
            r"|Session Manager\\(?:BootExecute|SetupExecute)|InprocServer32|LocalServer32"
            r"|ShellIconOverlay|ContextMenuHandler|Browser Helper|Active Setup"
            r"|Print\\Monitors|NetworkProvider|Lsa\\)"
        ),
    ),
    EventRule(
        "Registry Modification", "Registry Key Created/Deleted", ("12",), ("sysmon",), "medium",
        {"targetObject": payload_field("TargetObject", "TgtObj"), "image": payload_field("Image")},
        payload_filter=_rx(
            r"\\(?:Run|RunOnce|Services\\|Winlogon|AppInit_DLLs|Image File Execution Options"
            r"|Session Manager\\BootExecute|Active Setup|Print\\Monitors|NetworkProvider|Lsa\\)"
        ),
    ),
    EventRule(
        "Registry Rename", "Registry Key/Value Renamed", ("14",), ("sysmon",), "medium",
        {"targetObject": payload_field("TargetObject"), "newName": payload_field("NewName")},
        payload_filter=_rx(r"\\(?:Run|RunOnce|Services\\|Winlogon|Image File Execution Options)"),
    ),
    EventRule(
        "Startup Folder", "File Created in Startup", ("11",), ("sysmon",), "high",
        {"targetFilename": payload_field("TargetFilename"), "image": payload_field("Image")},
        payload_filter=_rx(
            r"Start Menu\\Programs\\Startup|ProgramData\\Microsoft\\Windows\\Start Menu"
            r"|\\Startup\\[^\\]*\.(exe|dll|bat|cmd|ps1|vbs|js|lnk|url)$"
        ),
    ),
    EventRule(
        "DLL Hijacking", "Unsigned DLL Loaded", ("7",), ("sysmon",), "medium",
        {"imageLoaded": payload_field("ImageLoaded"), "image": payload_field("Image")},
        payload_filter=_rx(r"Signed:\s*false"),
    ),
    EventRule(
        "Driver Loading", "Suspicious Driver Loaded", ("6",), ("sysmon",), "critical",
        {"imageLoaded": payload_field("ImageLoaded"), "signer": payload_field("Signer")},
        payload_filter=_rx(r"Signed:\s*false|SignatureStatus:\s*(?:Expired|Revoked|Invalid|Unavailable)"),
    ),
    EventRule(
        "Process Tampering", "Process Tampering Detected", ("25",), ("sysmon",), "critical",
        {"type": payload_field("Type"), "image": payload_field("Image")},
    ),
    EventRule(
        "Account Persistence", "User Account Created", ("4720",), ("security",), "high",
        {"targetUser": payload_field("TargetUserName"), "subjectUser": payload_field("SubjectUserName")},
    ),
    EventRule(
        "Account Persistence", "Member Added to Global Security Group", ("4728",), ("security",),
        "critical",
        {"groupName": payload_field("TargetUserName"), "memberName": payload_field("MemberName")},
    ),
    EventRule(
        "Account Persistence", "Member Added to Local Security Group", ("4732",), ("security",),
        "high",
        {"groupName": payload_field("TargetUserName"), "memberName": payload_field("MemberName")},
    ),
    EventRule(
        "Account Persistence", "Member Added to Universal Security Group", ("4756",), ("security",),
        "critical",
        {"groupName": payload_field("TargetUserName"), "memberName": payload_field("MemberName")},
    ),
    EventRule(
        "Account Persistence", "User Password Reset", ("4724",), ("security",), "medium",
        {"targetUser": payload_field("TargetUserName"), "subjectUser": payload_field("SubjectUserName")},
    ),
)

REGISTRY_RULES = (
    RegistryRule(
        "Run Keys", "Run/RunOnce Autostart", "high",
        _rx(r"\\Software\\Microsoft\\Windows\\CurrentVersion\\(?:Run|RunOnce|RunOnceEx)(?:\\|$)"),
    ),
    RegistryRule(
        "Services", "Service ImagePath/ServiceDll", "high",
        _rx(r"\\System\\(?:CurrentControlSet|ControlSet\d+)\\Services\\[^\\]+(?:\\Parameters)?$"),
        _rx(r"^(ImagePath|ServiceDll|FailureCommand)$"),
    ),
    RegistryRule(
        "Winlogon", "Winlogon Shell/Userinit", "critical",
        _rx(r"\\Microsoft\\Windows NT\\CurrentVersion\\Winlogon$"),
        _rx(r"^(Shell|Userinit|Notify|VmApplet|AppSetup)$"),
    ),
    RegistryRule(
        "AppInit DLLs", "AppInit_DLLs", "critical",
        _rx(r"\\Microsoft\\Windows NT\\CurrentVersion\\Windows$"),
        _rx(r"^(AppInit_DLLs|LoadAppInit_DLLs)$"),
    ),
    RegistryRule(
        "IFEO", "Image File Execution Options Debugger", "critical",
        _rx(r"\\Image File Execution Options\\[^\\]+$"),
        _rx(r"^(Debugger|GlobalFlag)$"),
    ),
    RegistryRule(
        "COM Hijacking", "COM Object Server", "high",
        _rx(r"\\(?:InprocServer32|LocalServer32|InprocHandler32)$"),
    ),
    RegistryRule(
        "Shell Extensions", "Shell Extension Handler", "medium",
        _rx(
            r"\\(?:ShellIconOverlayIdentifiers|ContextMenuHandlers|PropertySheetHandlers"
            r"|ColumnHandlers|CopyHookHandlers|DragDropHandlers|ShellExecuteHooks)\\[^\\]+$"
        ),
    ),
    RegistryRule(
        "Boot Execute", "Session Manager BootExecute", "critical",
        _rx(r"\\Session Manager$"),
        _rx(r"^(BootExecute|SetupExecute|Execute)$"),
    ),
    RegistryRule(
        "BHO", "Browser Helper Object", "medium",
        _rx(r"\\Browser Helper Objects\\\{[0-9a-f-]+\}$"),
    ),
    RegistryRule(
        "LSA", "LSA Security/Auth Packages", "critical",
        _rx(r"\\(?:Control\\)?Lsa$"),
        _rx(r"^(Security Packages|Authentication Packages|Notification Packages)$"),
    ),
    RegistryRule(
        "Print Monitors", "Print Monitor DLL", "high",
        _rx(r"\\Print\\Monitors\\[^\\]+$"),
        _rx(r"^Driver$"),
    ),
    RegistryRule(
        "Active Setup", "Active Setup StubPath", "high",
        _rx(r"\\Active Setup\\Installed Components\\\{[0-9a-f-]+\}$"),
        _rx(r"^StubPath$"),
    ),
    RegistryRule(
        "Startup Folder", "Startup Folder Registry Path", "high",
        _rx(r"\\Explorer\\(?:User Shell Folders|Shell Folders)$"),
        _rx(r"Startup"),
    ),
    RegistryRule(
        "Scheduled Tasks (Reg)", "Scheduled Task in Registry", "medium",
        _rx(r"\\Schedule\\TaskCache\\(?:Tasks|Tree)\\?"),
    ),
    RegistryRule(
        "Network Providers", "Network Provider Order", "high",
        _rx(r"\\NetworkProvider\\Order$"),
        _rx(r"^ProviderOrder$"),
    ),
)


def event_rule_ids():
    return tuple(dict.fromkeys(eid for rule in EVENT_RULES for eid in rule.event_ids))
