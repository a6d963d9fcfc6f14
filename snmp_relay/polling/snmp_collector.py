"""
SNMP collector.

Issues one GET for every configured OID per poll and turns the reply
into a record keyed by the configured field names.
"""
import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from pyasn1.type import univ
from pysnmp.hlapi.v3arch.asyncio import (
    CommunityData,
    ContextData,
    ObjectIdentity,
    ObjectType,
    SnmpEngine,
    UdpTransportTarget,
    get_cmd,
)
from pysnmp.proto import rfc1902
from pysnmp.proto.rfc1905 import EndOfMibView, NoSuchInstance, NoSuchObject

from ..config import RelayConfig
from ..delivery.sample_buffer import Record, Scalar, make_record

logger = logging.getLogger(__name__)

_VARBIND_EXCEPTIONS = (NoSuchObject, NoSuchInstance, EndOfMibView)

# SNMP message processing model per version
_MP_MODELS = {"1": 0, "2c": 1}


def convert_value(value: Any) -> Scalar:
    """
    Convert an SNMP value to a JSON-friendly scalar.

    Octet strings become UTF-8 text, integer types (counters, gauges,
    timeticks) become ints, addresses and OIDs become dotted text.
    """
    if isinstance(value, rfc1902.IpAddress):
        return value.prettyPrint()
    if isinstance(value, univ.OctetString):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, univ.Integer):
        return int(value)
    if isinstance(value, univ.ObjectIdentifier):
        return str(value)
    return value.prettyPrint()


class SnmpCollector:
    """
    Polls one SNMP agent for a fixed set of OIDs.

    The engine and transport target are created on first use and reused
    for every poll.
    """

    def __init__(self, config: RelayConfig):
        """
        Initialize the collector.

        Args:
            config: Settings document with device address, community and OIDs.
        """
        self.config = config
        self._oids: List[str] = list(config.oids.keys())
        self._fields: Dict[str, str] = dict(config.oids)

        self._engine: Optional[SnmpEngine] = None
        self._target: Optional[UdpTransportTarget] = None
        self._auth = CommunityData(
            config.community, mpModel=_MP_MODELS[config.version]
        )
        self._object_types = [ObjectType(ObjectIdentity(oid)) for oid in self._oids]

        # Statistics
        self._total_polls = 0
        self._failed_polls = 0
        self._last_error: Optional[str] = None

    async def collect(self) -> Tuple[bool, Optional[Record], Optional[str]]:
        """
        Poll the device once.

        Returns:
            Tuple of (success, record, error_message).
        """
        self._total_polls += 1
        start_time = time.monotonic()

        try:
            error_indication, error_status, error_index, var_binds = await asyncio.wait_for(
                self._get(),
                timeout=self._overall_timeout(),
            )
        except asyncio.TimeoutError:
            return self._failed("Poll timeout")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return self._failed(str(e))

        if error_indication:
            return self._failed(str(error_indication))

        if error_status:
            return self._failed(
                f"{error_status.prettyPrint()} at index {int(error_index)}"
            )

        record = make_record(self._to_fields(var_binds))
        duration_ms = (time.monotonic() - start_time) * 1000
        logger.debug(
            f"Collected {len(record)} values from {self.config.ip} in {duration_ms:.1f}ms"
        )
        return True, record, None

    async def _get(self):
        if self._engine is None:
            self._engine = SnmpEngine()
        if self._target is None:
            self._target = await UdpTransportTarget.create(
                (self.config.ip, self.config.port),
                timeout=self.config.timeout_seconds,
                retries=self.config.retries,
            )

        return await get_cmd(
            self._engine,
            self._auth,
            self._target,
            ContextData(),
            *self._object_types,
            lookupMib=False,
        )

    def _to_fields(self, var_binds) -> Dict[str, Scalar]:
        fields: Dict[str, Scalar] = {}

        for index, (name, value) in enumerate(var_binds):
            oid = str(name)

            if isinstance(value, _VARBIND_EXCEPTIONS):
                logger.warning(f"{value.prettyPrint()}: {oid}")
                continue

            field = self._fields.get(oid)
            if field is None and index < len(self._oids):
                field = self._fields[self._oids[index]]
            if field is None:
                logger.debug(f"Ignoring unexpected OID in response: {oid}")
                continue

            fields[field] = convert_value(value)

        return fields

    def _failed(self, error: str) -> Tuple[bool, None, str]:
        # Poll errors are expected while the device is unreachable
        self._failed_polls += 1
        self._last_error = error
        logger.debug(f"SNMP poll of {self.config.ip} failed: {error}")
        return False, None, error

    def _overall_timeout(self) -> float:
        return self.config.timeout_seconds * (self.config.retries + 1) + 1.0

    def close(self) -> None:
        """Release the SNMP engine."""
        if self._engine is not None:
            self._engine.close_dispatcher()
            self._engine = None
            self._target = None

    def get_stats(self) -> Dict[str, Any]:
        return {
            "device": f"{self.config.ip}:{self.config.port}",
            "oids": len(self._oids),
            "total_polls": self._total_polls,
            "failed_polls": self._failed_polls,
            "last_error": self._last_error,
        }
