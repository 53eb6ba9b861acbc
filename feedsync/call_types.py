from __future__ import annotations

import re

# code -> (description, category); alarm codes are folded into "fire".
CALL_TYPES: dict[str, tuple[str, str]] = {
    "AA": ("Auto Aid", "fire"),
    "MU": ("Mutual Aid", "fire"),
    "ST": ("Strike Team/Task Force", "fire"),
    "AC": ("Aircraft Crash", "rescue"),
    "AE": ("Aircraft Emergency", "rescue"),
    "AES": ("Aircraft Emergency Standby", "rescue"),
    "LZ": ("Landing Zone", "medical"),
    "AED": ("AED Alarm", "fire"),
    "OA": ("Alarm", "fire"),
    "CMA": ("Carbon Monoxide Alarm", "fire"),
    "FA": ("Fire Alarm", "fire"),
    "MA": ("Manual Alarm", "fire"),
    "SD": ("Smoke Detector", "fire"),
    "TRBL": ("Trouble Alarm", "fire"),
    "WFA": ("Waterflow Alarm", "fire"),
    "FL": ("Flooding", "rescue"),
    "LR": ("Ladder Request", "fire"),
    "LA": ("Lift Assist", "medical"),
    "PA": ("Police Assist", "other"),
    "PS": ("Public Service", "other"),
    "SH": ("Sheared Hydrant", "fire"),
    "EX": ("Explosion", "fire"),
    "PE": ("Pipeline Emergency", "hazmat"),
    "TE": ("Transformer Explosion", "fire"),
    "AF": ("Appliance Fire", "fire"),
    "CHIM": ("Chimney Fire", "fire"),
    "CF": ("Commercial Fire", "fire"),
    "WSF": ("Confirmed Structure Fire", "fire"),
    "WVEG": ("Confirmed Vegetation Fire", "fire"),
    "CB": ("Controlled Burn", "fire"),
    "ELF": ("Electrical Fire", "fire"),
    "EF": ("Extinguished Fire", "fire"),
    "FIRE": ("Fire", "fire"),
    "FULL": ("Full Assignment", "fire"),
    "IF": ("Illegal Fire", "fire"),
    "MF": ("Marine Fire", "fire"),
    "OF": ("Outside Fire", "fire"),
    "PF": ("Pole Fire", "fire"),
    "GF": ("Refuse/Garbage Fire", "fire"),
    "RF": ("Residential Fire", "fire"),
    "SF": ("Structure Fire", "fire"),
    "TF": ("Tank Fire", "fire"),
    "VEG": ("Vegetation Fire", "fire"),
    "VF": ("Vehicle Fire", "fire"),
    "WF": ("Confirmed Fire", "fire"),
    "WCF": ("Working Commercial Fire", "fire"),
    "WRF": ("Working Residential Fire", "fire"),
    "BT": ("Bomb Threat", "hazmat"),
    "EE": ("Electrical Emergency", "hazmat"),
    "EM": ("Emergency", "other"),
    "ER": ("Emergency Response", "other"),
    "GAS": ("Gas Leak", "hazmat"),
    "HC": ("Hazardous Condition", "hazmat"),
    "HMR": ("Hazmat Response", "hazmat"),
    "TD": ("Tree Down", "other"),
    "WE": ("Water Emergency", "rescue"),
    "AI": ("Arson Investigation", "fire"),
    "FWI": ("Fireworks Investigation", "fire"),
    "HMI": ("Hazmat Investigation", "hazmat"),
    "INV": ("Investigation", "other"),
    "OI": ("Odor Investigation", "other"),
    "SI": ("Smoke Investigation", "fire"),
    "CL": ("Commercial Lockout", "other"),
    "LO": ("Lockout", "other"),
    "RL": ("Residential Lockout", "other"),
    "VL": ("Vehicle Lockout", "other"),
    "CP": ("Community Paramedicine", "medical"),
    "CPR": ("CPR in Progress", "medical"),
    "IFT": ("Interfacility Transfer", "medical"),
    "ME": ("Medical Emergency", "medical"),
    "MCI": ("Mass Casualty Incident", "medical"),
    "EQ": ("Earthquake", "rescue"),
    "FLW": ("Flood Warning", "rescue"),
    "TOW": ("Tornado Warning", "rescue"),
    "TSW": ("Tsunami Warning", "rescue"),
    "WX": ("Weather Incident", "rescue"),
    "AR": ("Animal Rescue", "rescue"),
    "CR": ("Cliff Rescue", "rescue"),
    "CSR": ("Confined Space Rescue", "rescue"),
    "ELR": ("Elevator Rescue", "rescue"),
    "EER": ("Elevator/Escalator Rescue", "rescue"),
    "IR": ("Ice Rescue", "rescue"),
    "IA": ("Industrial Accident", "rescue"),
    "RES": ("Rescue", "rescue"),
    "RR": ("Rope Rescue", "rescue"),
    "SC": ("Structural Collapse", "rescue"),
    "TR": ("Technical Rescue", "rescue"),
    "TNR": ("Trench Rescue", "rescue"),
    "USAR": ("Urban Search and Rescue", "rescue"),
    "VS": ("Vessel Sinking", "rescue"),
    "WR": ("Water Rescue", "rescue"),
    "TCP": ("Collision Involving Pedestrian", "traffic"),
    "TCS": ("Collision Involving Structure", "traffic"),
    "TCT": ("Collision Involving Train", "traffic"),
    "TCE": ("Expanded Traffic Collision", "traffic"),
    "RTE": ("Railroad/Train Emergency", "traffic"),
    "TC": ("Traffic Collision", "traffic"),
    "MVA": ("Motor Vehicle Accident", "traffic"),
    "MVC": ("Motor Vehicle Collision", "traffic"),
    "PLE": ("Powerline Emergency", "hazmat"),
    "WA": ("Wires Arcing", "hazmat"),
    "WD": ("Wires Down", "hazmat"),
    "WDA": ("Wires Down/Arcing", "hazmat"),
    "BP": ("Burn Permit", "other"),
    "CA": ("Community Activity", "other"),
    "FW": ("Fire Watch", "fire"),
    "MC": ("Move-up/Cover", "other"),
    "NO": ("Notification", "other"),
    "STBY": ("Standby", "other"),
    "TEST": ("Test", "other"),
    "TRNG": ("Training", "other"),
    "UNK": ("Unknown Call Type", "other"),
}

MEDICAL_CODES = frozenset({"ME", "LA", "IFT", "CP", "CPR", "MCI"})

_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("hazmat", ("hazmat", "hazardous", "spill", "chemical", "leak", "wires down", "powerline")),
    ("fire", ("fire", "smoke", "alarm", "explosion", "burn")),
    ("medical", ("medical", "ems", "ambulance", "cardiac", "breathing", "unconscious", "injury", "sick", "overdose")),
    ("rescue", ("rescue", "trapped", "missing", "entrapment", "collapse")),
    ("traffic", ("accident", "collision", "mva", "mvc", "vehicle", "traffic", "crash")),
)


def normalize_code(call_type: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"[^A-Z0-9/\s]", "", str(call_type).upper())).strip()


def describe(call_type: str) -> str:
    entry = CALL_TYPES.get(normalize_code(call_type))
    if entry is None:
        return str(call_type).strip()
    return entry[0]


def category_for(call_type: str) -> str:
    code = normalize_code(call_type)
    entry = CALL_TYPES.get(code)
    if entry is not None:
        return entry[1]
    lowered = str(call_type).lower()
    for category, keywords in _KEYWORDS:
        if any(word in lowered for word in keywords):
            return category
    return "other"


def is_medical(call_type: str, category: str | None = None) -> bool:
    if normalize_code(call_type) in MEDICAL_CODES:
        return True
    return (category or category_for(call_type)) == "medical"


def matches_allow_list(call_type: str, category: str, allow_list: list[str]) -> bool:
    """Allow-list entries may name a category, a code or a description; "other" also catches unmapped types."""
    if not allow_list:
        return True
    code = normalize_code(call_type)
    description = describe(call_type).lower()
    for raw in allow_list:
        item = str(raw).strip()
        if not item:
            continue
        lowered = item.lower()
        if lowered == category:
            return True
        if normalize_code(item) == code:
            return True
        if lowered == description:
            return True
    return False
