# storefront/tracker/dom.py
"""
Plain-object stand-ins for the browser signals the tracker observes.

The host (a browser bridge, a test, a replay tool) builds these and hands them to
the tracker's handlers.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class Rect:
    left: float = 0.0
    top: float = 0.0
    width: float = 0.0
    height: float = 0.0


@dataclass
class Element:
    tag: str
    id: str = ""
    classes: List[str] = field(default_factory=list)
    attributes: Dict[str, str] = field(default_factory=dict)
    name: str = ""
    type: str = ""
    text: str = ""
    rect: Rect = field(default_factory=Rect)
    parent: Optional["Element"] = field(default=None, repr=False)
    children: List["Element"] = field(default_factory=list, repr=False)

    def __post_init__(self):
        self.tag = self.tag.lower()

    def append(self, child: "Element") -> "Element":
        child.parent = self
        self.children.append(child)
        return child

    @property
    def sibling_index(self) -> Optional[int]:
        """1-based position among the parent's children, None for a detached element."""
        if self.parent is None:
            return None
        for index, sibling in enumerate(self.parent.children, start=1):
            if sibling is self:
                return index
        return None

    def matches(self, selector: str) -> bool:
        """Simple selectors only: tag, #id, .class, [attr] and [attr=value]."""
        selector = selector.strip()
        if not selector:
            return False
        if selector.startswith('#'):
            return self.id == selector[1:]
        if selector.startswith('.'):
            return selector[1:] in self.classes
        if selector.startswith('[') and selector.endswith(']'):
            body = selector[1:-1]
            if '=' in body:
                attr, value = body.split('=', 1)
                return self.attributes.get(attr.strip()) == value.strip().strip('"\'')
            return body.strip() in self.attributes
        return self.tag == selector.lower()

    def closest(self, selector: str) -> Optional["Element"]:
        node: Optional[Element] = self
        while node is not None:
            if node.matches(selector):
                return node
            node = node.parent
        return None

    def closest_form(self) -> Optional["Element"]:
        return self.closest('form')


@dataclass
class PageContext:
    url: str = ""
    title: str = ""
    referrer: str = ""
    user_agent: str = ""
    viewport_width: int = 0
    viewport_height: int = 0
    screen_width: int = 0
    screen_height: int = 0
    scroll_top: float = 0.0
    scroll_left: float = 0.0
    document_height: float = 0.0
    do_not_track: bool = False
