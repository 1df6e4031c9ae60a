# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Gateway configuration.

   The configuration is an XML document, validated against a RelaxNG
   schema before it is used:

     <gateway xmlns="urn:threema:params:xml:ns:gateway-config" identity="*EXAMPLE">
       <api-secret>...</api-secret>
       <secret-key>...</secret-key>                    <!-- 64 hex digits -->
       <callback-queue-size>100</callback-queue-size>  <!-- optional -->
     </gateway>

   Instead of embedding the secret key, the document can refer to a file
   that holds it with <secret-key-file>. Relative paths are resolved from
   the directory of the configuration file.

"""

from dataclasses import dataclass, field
from os import PathLike
from pathlib import Path
from typing import Self

from lxml import etree

from threema.crypto import load_secret_key, read_hex_secret_key
from threema.messages.datamodel import IdentityAdapter, SecretKey
from threema.messages.exceptions import MalformedInputError

__all__ = 'ConfigurationError', 'GatewayConfiguration', 'RelaxNGValidator'


# noinspection PyProtectedMember
type ETreeElement = etree._Element  # noqa: SLF001


NAMESPACE = 'urn:threema:params:xml:ns:gateway-config'

DEFAULT_QUEUE_SIZE = 100


class ConfigurationError(ValueError):
    pass


class RelaxNGValidator:
    schema_directory = Path(__file__).parent / 'schema'

    def __init__(self, schema_file: str) -> None:
        self.schema_path = self.schema_directory / schema_file
        self.schema = etree.RelaxNG(file=self.schema_path)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, RelaxNGValidator):
            return self.schema_path == other.schema_path
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.schema_path)

    def validate(self, element: ETreeElement) -> None:
        if not self.schema.validate(element):
            raise ConfigurationError(f'The configuration does not match the {self.schema_path.name} schema: {self.schema.error_log.last_error}')


def _tag(name: str) -> str:
    return f'{{{NAMESPACE}}}{name}'


@dataclass(frozen=True)
class GatewayConfiguration:
    identity: str
    api_secret: str = field(repr=False)
    secret_key: SecretKey = field(repr=False)
    callback_queue_size: int = DEFAULT_QUEUE_SIZE

    validator = RelaxNGValidator('gateway.rng')

    def __post_init__(self) -> None:
        try:
            IdentityAdapter.validate(self.identity)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        if not self.api_secret:
            raise ConfigurationError('The API secret cannot be empty')
        if not isinstance(self.secret_key, SecretKey):
            raise TypeError(f'Expected a {SecretKey.__qualname__!r} for secret_key, got {self.secret_key.__class__.__qualname__!r}')
        if self.callback_queue_size < 1:
            raise ConfigurationError(f'The callback queue size must be a positive integer: {self.callback_queue_size!r}')

    @classmethod
    def from_xml(cls, element: ETreeElement, *, base_directory: str | PathLike[str] | None = None) -> Self:
        cls.validator.validate(element)
        secret_key_text = element.findtext(_tag('secret-key'))
        try:
            if secret_key_text is not None:
                secret_key = read_hex_secret_key(secret_key_text)
            else:
                key_path = Path(element.findtext(_tag('secret-key-file'), '').strip()).expanduser()
                if base_directory is not None and not key_path.is_absolute():
                    key_path = Path(base_directory) / key_path
                secret_key = load_secret_key(key_path)
        except (MalformedInputError, OSError) as exc:
            raise ConfigurationError(f'Could not read the secret key: {exc}') from exc
        return cls(
            identity=element.get('identity', ''),
            api_secret=element.findtext(_tag('api-secret'), '').strip(),
            secret_key=secret_key,
            callback_queue_size=int(element.findtext(_tag('callback-queue-size'), str(DEFAULT_QUEUE_SIZE))),
        )

    @classmethod
    def from_string(cls, document: str | bytes, *, base_directory: str | PathLike[str] | None = None) -> Self:
        try:
            element = etree.fromstring(document)
        except etree.XMLSyntaxError as exc:
            raise ConfigurationError(f'Invalid configuration document: {exc}') from exc
        return cls.from_xml(element, base_directory=base_directory)

    @classmethod
    def from_file(cls, path: str | PathLike[str]) -> Self:
        path = Path(path).expanduser()
        return cls.from_string(path.read_bytes(), base_directory=path.parent)

    def to_xml(self) -> ETreeElement:
        element = etree.Element(_tag('gateway'), identity=self.identity, nsmap={None: NAMESPACE})
        etree.SubElement(element, _tag('api-secret')).text = self.api_secret
        etree.SubElement(element, _tag('secret-key')).text = self.secret_key.hex()
        etree.SubElement(element, _tag('callback-queue-size')).text = str(self.callback_queue_size)
        return element

    def to_string(self) -> str:
        return etree.tostring(self.to_xml(), encoding='unicode', pretty_print=True)
