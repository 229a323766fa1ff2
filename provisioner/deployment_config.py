# provisioner/deployment_config.py
import base64
import binascii
import copy
import json
import logging

from provisioner import key_repair

log = logging.getLogger(__name__)

# Field names as written by the pipeline service; older writers only know the nested copy.
TOP_LEVEL_KEY = "ec2SshKey"
ENCODED_KEY = "ec2SshKeyEncoded"
NESTED_SECTION = "config"
NESTED_KEY = "ec2SshKey"
KEY_PAIR_NAME = "keyPairName"


def encode_key(key: str) -> str:
    return base64.b64encode(key.encode("utf-8")).decode("ascii")


def decode_key(encoded: str) -> str | None:
    try:
        return base64.b64decode("".join(encoded.split()), validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        return None


class DeploymentConfig:
    """
    Wrapper around a pipeline's deployment-config document.

    The document is otherwise opaque; only the three private-key locations and
    the nested key-pair name are interpreted here.
    """

    def __init__(self, data: dict | None = None):
        self.data = data if data is not None else {}

    @classmethod
    def from_blob(cls, blob) -> "DeploymentConfig":
        if blob is None or blob == "":
            return cls({})
        if isinstance(blob, str):
            blob = json.loads(blob)
        if not isinstance(blob, dict):
            raise ValueError(f"Deployment config must be an object, got {type(blob).__name__}")
        return cls(blob)

    def to_blob(self) -> dict:
        return copy.deepcopy(self.data)

    @property
    def nested(self) -> dict | None:
        section = self.data.get(NESTED_SECTION)
        return section if isinstance(section, dict) else None

    @property
    def top_level_key(self) -> str | None:
        return self.data.get(TOP_LEVEL_KEY) or None

    @property
    def nested_key(self) -> str | None:
        section = self.nested
        return (section.get(NESTED_KEY) or None) if section is not None else None

    @property
    def encoded_key(self) -> str | None:
        return self.data.get(ENCODED_KEY) or None

    def key_sources(self):
        """Yield (location, plaintext) for every location holding a key, in precedence order."""
        if self.top_level_key:
            yield TOP_LEVEL_KEY, self.top_level_key
        if self.encoded_key:
            decoded = decode_key(self.encoded_key)
            if decoded:
                yield ENCODED_KEY, decoded
            else:
                log.warning("Ignoring %s: not valid base64 text", ENCODED_KEY)
        if self.nested_key:
            yield f"{NESTED_SECTION}.{NESTED_KEY}", self.nested_key

    def resolve_key(self):
        """Return (key, location) of the first well-formed key, or (None, None)."""
        for location, key in self.key_sources():
            if key_repair.has_pem_markers(key):
                return key, location
        return None, None

    def set_key(self, key: str):
        """Write ``key`` to all three locations."""
        self.data[TOP_LEVEL_KEY] = key
        self.data[ENCODED_KEY] = encode_key(key)
        section = self.nested
        if section is None:
            section = {}
            self.data[NESTED_SECTION] = section
        section[NESTED_KEY] = key

    def set_key_pair_name(self, key_pair_name: str):
        section = self.nested
        if section is None:
            section = {}
            self.data[NESTED_SECTION] = section
        section[KEY_PAIR_NAME] = key_pair_name

    def reconcile(self) -> bool:
        """
        Make the three key locations agree with the preferred well-formed copy,
        repairing it first if it is malformed.

        Returns True when the document changed.
        """
        key, location = self.resolve_key()
        if key is None:
            return False

        fixed = key_repair.normalize(key)
        if fixed != key:
            log.info("Reformatted SSH key from %s to PEM layout (%d chars)", location, len(fixed))

        before = (self.top_level_key, self.encoded_key, self.nested_key)
        self.set_key(fixed)
        changed = before != (self.top_level_key, self.encoded_key, self.nested_key)
        if changed:
            log.info("Reconciled SSH key locations from %s", location)
        return changed
