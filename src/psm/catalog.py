from dataclasses import dataclass

from psm.errors import UnknownInstanceClass


@dataclass(frozen=True)
class InstanceClass:
    name: str
    vcpus: int
    memory_gib: int
    # Preferred first. Only a fallback ordering; price decides.
    instance_types: tuple[str, ...]

    @property
    def label(self) -> str:
        return f"{self.vcpus} vCPU / {self.memory_gib} GiB"


_registry: dict[str, InstanceClass] = {}


def register_class(instance_class: InstanceClass) -> None:
    _registry[instance_class.name] = instance_class


def get_class(name: str, extra: dict[str, InstanceClass] | None = None) -> InstanceClass:
    if extra and name in extra:
        return extra[name]
    try:
        return _registry[name]
    except KeyError:
        raise UnknownInstanceClass(name) from None


def list_classes(extra: dict[str, InstanceClass] | None = None) -> list[InstanceClass]:
    return list({**_registry, **(extra or {})}.values())


def instance_types_for(name: str, extra: dict[str, InstanceClass] | None = None) -> list[str]:
    return list(get_class(name, extra).instance_types)


def classes_from_config(classes: dict) -> dict[str, InstanceClass]:
    """Build the overlay of classes declared under `instance_classes:`.

    The overlay is passed to the lookups above and shadows built-in classes
    of the same name without touching the shared registry.
    """
    return {
        name: InstanceClass(
            name=name, vcpus=settings.vcpus, memory_gib=settings.memory_gib,
            instance_types=tuple(settings.instance_types),
        )
        for name, settings in classes.items()
    }


for _cls in (
    InstanceClass("2c2g", 2, 2, ("t3a.small", "t3.small")),
    InstanceClass("2c8g", 2, 8, ("m6a.large", "m5a.large", "m6i.large", "m5.large")),
    InstanceClass("4c8g", 4, 8, ("c6a.xlarge", "c5a.xlarge", "c6i.xlarge")),
    InstanceClass("2c16g", 2, 16, ("r6a.large", "r5a.large", "r6i.large")),
    InstanceClass("4c16g", 4, 16, ("m6a.xlarge", "m5a.xlarge", "m6i.xlarge", "m5.xlarge")),
    InstanceClass("4c32g", 4, 32, ("r6a.xlarge", "r5a.xlarge", "r6i.xlarge")),
    InstanceClass("8c32g", 8, 32, ("m6a.2xlarge", "m5a.2xlarge", "m6i.2xlarge")),
):
    register_class(_cls)
