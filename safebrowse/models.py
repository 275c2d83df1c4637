"""
SafeBrowse data model

List identities, update diffs, match records and the pydantic models that
validate the remote service's JSON responses.
"""

import base64
import binascii
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from .errors import RemoteServiceError


class ThreatType(str, Enum):
    """Threat categories tracked by the remote service"""

    MALWARE = "MALWARE"
    SOCIAL_ENGINEERING = "SOCIAL_ENGINEERING"
    POTENTIALLY_HARMFUL_APPLICATION = "POTENTIALLY_HARMFUL_APPLICATION"
    UNWANTED_SOFTWARE = "UNWANTED_SOFTWARE"


class PlatformType(str, Enum):
    """Platforms a threat list applies to"""

    ANY_PLATFORM = "ANY_PLATFORM"
    WINDOWS = "WINDOWS"
    LINUX = "LINUX"
    OSX = "OSX"
    ALL_PLATFORMS = "ALL_PLATFORMS"
    CHROME = "CHROME"
    ANDROID = "ANDROID"
    IOS = "IOS"


class ThreatEntryType(str, Enum):
    """Kind of entries held by a threat list"""

    URL = "URL"
    IP_RANGE = "IP_RANGE"


class ResponseType(str, Enum):
    """Whether a list update replaces the list or patches it"""

    RESPONSE_TYPE_UNSPECIFIED = "RESPONSE_TYPE_UNSPECIFIED"
    PARTIAL_UPDATE = "PARTIAL_UPDATE"
    FULL_UPDATE = "FULL_UPDATE"


# Numeric codes form the storage namespace of each list, never renumber.
THREAT_TYPE_CODES: Dict[ThreatType, int] = {
    ThreatType.MALWARE: 1,
    ThreatType.SOCIAL_ENGINEERING: 2,
    ThreatType.POTENTIALLY_HARMFUL_APPLICATION: 3,
    ThreatType.UNWANTED_SOFTWARE: 4,
}

PLATFORM_TYPE_CODES: Dict[PlatformType, int] = {
    PlatformType.ANY_PLATFORM: 1,
    PlatformType.WINDOWS: 2,
    PlatformType.LINUX: 3,
    PlatformType.OSX: 4,
    PlatformType.ALL_PLATFORMS: 5,
    PlatformType.CHROME: 6,
    PlatformType.ANDROID: 7,
    PlatformType.IOS: 8,
}

THREAT_ENTRY_TYPE_CODES: Dict[ThreatEntryType, int] = {
    ThreatEntryType.URL: 1,
    ThreatEntryType.IP_RANGE: 2,
}


def _invert(codes: Dict[Any, int]) -> Dict[str, Any]:
    return {str(code): member for member, code in codes.items()}


_THREAT_TYPES_BY_CODE = _invert(THREAT_TYPE_CODES)
_PLATFORM_TYPES_BY_CODE = _invert(PLATFORM_TYPE_CODES)
_THREAT_ENTRY_TYPES_BY_CODE = _invert(THREAT_ENTRY_TYPE_CODES)


@dataclass(frozen=True)
class ListIdentity:
    """One threat list: a (threat type, platform, entry type) triple"""

    threat_type: ThreatType
    platform_type: PlatformType
    threat_entry_type: ThreatEntryType

    def __post_init__(self):
        # Accept plain strings, store enum members.
        object.__setattr__(self, "threat_type", ThreatType(self.threat_type))
        object.__setattr__(self, "platform_type", PlatformType(self.platform_type))
        object.__setattr__(
            self, "threat_entry_type", ThreatEntryType(self.threat_entry_type)
        )

    @property
    def code(self) -> str:
        """Stable numeric code used as the storage key prefix"""
        return (
            f"{THREAT_TYPE_CODES[self.threat_type]}"
            f"{PLATFORM_TYPE_CODES[self.platform_type]}"
            f"{THREAT_ENTRY_TYPE_CODES[self.threat_entry_type]}"
        )

    @classmethod
    def from_code(cls, code: str) -> "ListIdentity":
        """Rebuild a list identity from its storage code"""
        if len(code) != 3:
            raise ValueError(f"Invalid list code: {code!r}")
        try:
            return cls(
                _THREAT_TYPES_BY_CODE[code[0]],
                _PLATFORM_TYPES_BY_CODE[code[1]],
                _THREAT_ENTRY_TYPES_BY_CODE[code[2]],
            )
        except KeyError as e:
            raise ValueError(f"Invalid list code: {code!r}") from e

    @classmethod
    def parse(cls, text: str) -> "ListIdentity":
        """Parse ``THREAT_TYPE:PLATFORM_TYPE:ENTRY_TYPE``"""
        parts = [part.strip().upper() for part in text.split(":")]
        if len(parts) != 3:
            raise ValueError(
                f"Expected THREAT_TYPE:PLATFORM_TYPE:ENTRY_TYPE, got {text!r}"
            )
        return cls(*parts)

    def to_request(self) -> Dict[str, str]:
        return {
            "threatType": self.threat_type.value,
            "platformType": self.platform_type.value,
            "threatEntryType": self.threat_entry_type.value,
        }

    def __str__(self) -> str:
        return (
            f"{self.threat_type.value}/{self.platform_type.value}/"
            f"{self.threat_entry_type.value}"
        )


def parse_duration(value: Union[str, float, int, None]) -> Optional[int]:
    """
    Parse a protocol duration such as ``"593.440s"`` into whole seconds.

    Fractions round up. Returns None for absent or non-numeric values.
    """
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        if value.endswith("s"):
            value = value[:-1]
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(seconds) or math.isinf(seconds):
        return None
    return math.ceil(seconds)


# ============= Update Diffs =============


@dataclass
class UpdateDiff:
    """A single list's update, decoded and ready to apply"""

    response_type: ResponseType
    removals: List[int] = field(default_factory=list)
    additions: List[Tuple[bytes, int]] = field(default_factory=list)
    new_state: str = ""

    @property
    def is_full(self) -> bool:
        return self.response_type == ResponseType.FULL_UPDATE

    def iter_prefixes(self) -> Iterator[bytes]:
        """Split each raw addition payload into fixed-width prefixes"""
        for raw, prefix_size in self.additions:
            for offset in range(0, len(raw), prefix_size):
                yield raw[offset : offset + prefix_size]


# ============= Wire Models =============


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RawHashes(WireModel):
    prefix_size: int = Field(4, alias="prefixSize")
    raw_hashes: str = Field("", alias="rawHashes")


class RawIndices(WireModel):
    indices: List[int] = Field(default_factory=list)


class ThreatEntrySet(WireModel):
    compression_type: Optional[str] = Field(None, alias="compressionType")
    raw_hashes: Optional[RawHashes] = Field(None, alias="rawHashes")
    raw_indices: Optional[RawIndices] = Field(None, alias="rawIndices")


_RAW_COMPRESSION = {None, "RAW", "COMPRESSION_TYPE_UNSPECIFIED"}


class ListUpdateResponse(WireModel):
    threat_type: ThreatType = Field(alias="threatType")
    platform_type: PlatformType = Field(alias="platformType")
    threat_entry_type: ThreatEntryType = Field(alias="threatEntryType")
    response_type: ResponseType = Field(
        ResponseType.PARTIAL_UPDATE, alias="responseType"
    )
    additions: List[ThreatEntrySet] = Field(default_factory=list)
    removals: List[ThreatEntrySet] = Field(default_factory=list)
    new_client_state: str = Field("", alias="newClientState")

    @property
    def list_id(self) -> ListIdentity:
        return ListIdentity(
            self.threat_type, self.platform_type, self.threat_entry_type
        )

    def to_diff(self) -> UpdateDiff:
        """
        Decode additions and flatten removals.

        Raises:
            RemoteServiceError: if a payload cannot be decoded
        """
        removals: List[int] = []
        for entry in self.removals:
            self._require_raw(entry)
            if entry.raw_indices:
                removals.extend(entry.raw_indices.indices)

        additions: List[Tuple[bytes, int]] = []
        for entry in self.additions:
            self._require_raw(entry)
            if not entry.raw_hashes:
                continue
            prefix_size = entry.raw_hashes.prefix_size
            try:
                raw = base64.b64decode(entry.raw_hashes.raw_hashes, validate=True)
            except (binascii.Error, ValueError) as e:
                raise RemoteServiceError(
                    f"Undecodable additions for list {self.list_id}: {e}"
                ) from e
            if prefix_size <= 0 or len(raw) % prefix_size:
                raise RemoteServiceError(
                    f"Additions for list {self.list_id} are {len(raw)} bytes, "
                    f"not a multiple of prefix size {prefix_size}"
                )
            additions.append((raw, prefix_size))

        return UpdateDiff(
            response_type=self.response_type,
            removals=removals,
            additions=additions,
            new_state=self.new_client_state,
        )

    def _require_raw(self, entry: ThreatEntrySet) -> None:
        if entry.compression_type not in _RAW_COMPRESSION:
            raise RemoteServiceError(
                f"Unsupported compression {entry.compression_type} "
                f"for list {self.list_id}"
            )


class ThreatListUpdatesResponse(WireModel):
    list_update_responses: List[ListUpdateResponse] = Field(
        default_factory=list, alias="listUpdateResponses"
    )
    minimum_wait_duration: Optional[Union[float, str]] = Field(
        None, alias="minimumWaitDuration"
    )


class ThreatEntry(WireModel):
    hash: str = ""


class ThreatMatch(WireModel):
    threat_type: ThreatType = Field(alias="threatType")
    platform_type: PlatformType = Field(alias="platformType")
    threat_entry_type: ThreatEntryType = Field(alias="threatEntryType")
    threat: ThreatEntry = Field(default_factory=ThreatEntry)
    cache_duration: Optional[Union[float, str]] = Field(None, alias="cacheDuration")

    @property
    def list_id(self) -> ListIdentity:
        return ListIdentity(
            self.threat_type, self.platform_type, self.threat_entry_type
        )


class FullHashesResponse(WireModel):
    matches: List[ThreatMatch] = Field(default_factory=list)
    minimum_wait_duration: Optional[Union[float, str]] = Field(
        None, alias="minimumWaitDuration"
    )
    negative_cache_duration: Optional[Union[float, str]] = Field(
        None, alias="negativeCacheDuration"
    )


# ============= Match Records =============


class MatchRecord(BaseModel):
    """A confirmed full-hash match"""

    threat_type: ThreatType
    platform_type: PlatformType
    threat_entry_type: ThreatEntryType
    full_hash: str = Field(..., description="Base64 SHA-256 of the expression")
    expression: Optional[str] = None
    client_state: Optional[str] = None
    cache_duration: Optional[int] = None

    @property
    def list_id(self) -> ListIdentity:
        return ListIdentity(
            self.threat_type, self.platform_type, self.threat_entry_type
        )
