"""
Known third-party agent modules.

Security, antivirus and monitoring products that inject into sqlservr.exe.
Their presence in a stack or module list is worth calling out when reading
a dump because they are known to destabilize or obscure the process.
"""
from dataclasses import dataclass
from typing import Tuple

KNOWN_BAD_MODULES: Tuple[str, ...] = (
    # Cylance
    "CYINJCT",
    # McAfee
    "ENTAPI", "HIPI", "HcSQL", "HcApi", "HcThe", "MFEBOPK", "MFETDIK",
    # Sophos
    "SOPHOS_DETOURED", "SWI_IFSLSP_64", "SOPHOS_DETOURED_x64",
    # PI OLEDB
    "PIOLEDB", "PISDK",
    # CrowdStrike
    "UMPPC", "SCRIPTCONTROL",
    # Trend Micro
    "perfiCrcPerfMonMgr",
    # Netlib
    "NLEMSQL64", "NLEMSQL",
)


@dataclass(frozen=True)
class ModuleClassifier:
    """Case-insensitive substring matcher over a fixed list of module name fragments."""
    fragments: Tuple[str, ...] = KNOWN_BAD_MODULES

    def matches(self, text: str) -> bool:
        lowered = text.lower()
        return any(fragment.lower() in lowered for fragment in self.fragments)


DEFAULT_CLASSIFIER = ModuleClassifier()
