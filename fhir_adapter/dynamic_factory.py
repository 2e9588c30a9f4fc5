"""Factory to load and instantiate dynamically named / configured class instances."""
import importlib

from fhir_adapter.constants import Interaction
from fhir_adapter.handlers.base import ResourceHandler
from fhir_adapter.registry import ResourceTypeDescriptor

# handler definition keys consumed here; the rest are repository kwargs
DESCRIPTOR_KEYS = (
    "kind", "model_type", "external_type", "interactions", "versioned",
    "mapper", "repository", "handler")


def load_class(path: str):
    module_name, _, class_name = path.rpartition(".")
    if not module_name:
        raise RuntimeError(f"class path not found: {path}")
    module = importlib.import_module(module_name)
    return getattr(module, class_name)


def load_handler(cfg):
    """Instantiate the handler described by one ``RESOURCE_HANDLERS`` entry

    ``interactions`` lists interaction codes (default all) and ``handler``
    optionally names a ``ResourceHandler`` subclass.
    """
    descriptor = ResourceTypeDescriptor(
        kind=cfg["kind"],
        model_type=cfg.get("model_type", cfg["kind"]),
        external_type=cfg.get("external_type"),
        interactions=frozenset(
            Interaction(code) for code in cfg.get(
                "interactions", [i.value for i in Interaction])),
        versioned=cfg.get("versioned", True))

    mapper = load_class(cfg["mapper"])()
    kwargs = {k: v for k, v in cfg.items() if k not in DESCRIPTOR_KEYS}
    repository = load_class(cfg["repository"])(**kwargs)

    handler_class = load_class(cfg["handler"]) if "handler" in cfg else ResourceHandler
    return handler_class(descriptor, mapper, repository)


def load_handlers(app, registry):
    for cfg in app.config["RESOURCE_HANDLERS"]:
        registry.register(cfg["kind"], load_handler(cfg))
    return registry


def load_modifiers(app):
    return [load_class(path)() for path in app.config["BEHAVIOR_MODIFIERS"]]
