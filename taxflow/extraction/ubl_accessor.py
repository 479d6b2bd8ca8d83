"""Typed accessors over UBL 2.1 XML elements.

Every field the parser reads goes through one of these getters, so a value
that is present but malformed fails with ``SchemaDriftError`` instead of
quietly turning into ``None``. Paths use the ``cac:``/``cbc:`` prefixes of
:data:`NAMESPACES` and are relative to the wrapped element.
"""

import datetime
from decimal import Decimal, InvalidOperation
from xml.etree.ElementTree import Element

from taxflow.shared.errors import MissingRequiredFieldError, SchemaDriftError

NAMESPACES: dict[str, str] = {
    "cac": "urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2",
    "cbc": "urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2",
    "ext": "urn:oasis:names:specification:ubl:schema:xsd:CommonExtensionComponents-2",
    "sts": "dian:gov:co:facturaelectronica:Structures-2-1",
}


def local_name(tag: str) -> str:
    """Strip the ``{namespace}`` part of an ElementTree tag."""
    return tag.rsplit("}", 1)[-1]


def namespace_of(tag: str) -> str | None:
    if tag.startswith("{"):
        return tag[1:].split("}", 1)[0]
    return None


class UBLElement:
    """Read-only wrapper around an ElementTree element.

    Args:
        element: Wrapped element
        path: Human-readable location, used in error messages
    """

    def __init__(self, element: Element, path: str = "") -> None:
        self._element = element
        self.path = path or local_name(element.tag)

    @property
    def local_name(self) -> str:
        return local_name(self._element.tag)

    @property
    def namespace(self) -> str | None:
        return namespace_of(self._element.tag)

    def _full(self, path: str) -> str:
        return f"{self.path}/{path}"

    def child(self, path: str) -> "UBLElement | None":
        found = self._element.find(path, NAMESPACES)
        if found is None:
            return None
        return UBLElement(found, self._full(path))

    def children(self, path: str) -> list["UBLElement"]:
        return [
            UBLElement(found, f"{self._full(path)}[{index}]")
            for index, found in enumerate(self._element.findall(path, NAMESPACES), start=1)
        ]

    def require_child(self, path: str, field: str) -> "UBLElement":
        """Return the child at ``path`` or fail loudly.

        Raises:
            SchemaDriftError: Element exists only under an unexpected namespace
            MissingRequiredFieldError: Element is absent
        """
        found = self.child(path)
        if found is None:
            self._raise_if_drifted(path)
            raise MissingRequiredFieldError(field)
        return found

    def text(self, path: str) -> str | None:
        """Stripped text at ``path``; ``None`` when absent or blank."""
        found = self._element.find(path, NAMESPACES)
        if found is None or found.text is None:
            return None
        value = found.text.strip()
        return value or None

    def require_text(self, path: str, field: str) -> str:
        value = self.text(path)
        if value is None:
            self._raise_if_drifted(path)
            raise MissingRequiredFieldError(field)
        return value

    def has(self, path: str) -> bool:
        return self._element.find(path, NAMESPACES) is not None

    def decimal(self, path: str, *, non_negative: bool = False) -> Decimal | None:
        """Parse the text at ``path`` as a finite ``Decimal``.

        Raises:
            SchemaDriftError: Text is not a number, or negative when forbidden
        """
        raw = self.text(path)
        if raw is None:
            if self.has(path):
                raise SchemaDriftError(self._full(path), "empty numeric value")
            return None
        try:
            value = Decimal(raw)
        except InvalidOperation as e:
            raise SchemaDriftError(self._full(path), f"not a number: {raw!r}") from e
        if not value.is_finite():
            raise SchemaDriftError(self._full(path), f"not a finite number: {raw!r}")
        if non_negative and value < 0:
            raise SchemaDriftError(self._full(path), f"negative amount: {raw}")
        return value

    def date(self, path: str) -> datetime.date | None:
        """Parse the text at ``path`` as an ISO-8601 date."""
        raw = self.text(path)
        if raw is None:
            return None
        try:
            return datetime.date.fromisoformat(raw[:10])
        except ValueError as e:
            raise SchemaDriftError(self._full(path), f"not an ISO date: {raw!r}") from e

    def require_date(self, path: str, field: str) -> datetime.date:
        value = self.date(path)
        if value is None:
            self._raise_if_drifted(path)
            raise MissingRequiredFieldError(field)
        return value

    def attribute(self, path: str, name: str) -> str | None:
        found = self._element.find(path, NAMESPACES)
        if found is None:
            return None
        value = found.get(name)
        return value.strip() if value and value.strip() else None

    def _raise_if_drifted(self, path: str) -> None:
        """Detect a required element published under another namespace."""
        wanted = path.rsplit("/", 1)[-1]
        prefix, _, name = wanted.partition(":")
        expected_ns = NAMESPACES.get(prefix)
        for element in self._element.iter():
            if element is self._element:
                continue
            if local_name(element.tag) == name and namespace_of(element.tag) != expected_ns:
                raise SchemaDriftError(
                    self._full(path),
                    f"found <{name}> in namespace {namespace_of(element.tag)!r}, "
                    f"expected {expected_ns!r}",
                )
