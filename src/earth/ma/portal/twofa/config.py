"""
Pure transitions over a user's two-factor configuration.

None of these functions touch storage or mutate their input. Callers persist the
returned value, and a ``None`` result from ``remove_method`` means the stored
configuration must be deleted.
"""

from typing import List, Optional

from earth.ma.portal.model.twofa import (
    CONFIG_VERSION,
    MethodConfig,
    MethodType,
    TwoFactorConfig,
)


def add_method(
    config: Optional[TwoFactorConfig], method: MethodConfig
) -> TwoFactorConfig:
    """
    Enable ``method``, replacing any existing method of the same type in place.

    A new configuration makes ``method`` the default. An existing configuration keeps
    its default and method order.
    """
    if config is None:
        return TwoFactorConfig(
            version=CONFIG_VERSION, default_method=method.type, methods=[method]
        )

    methods = list(config.methods)
    for index, existing in enumerate(methods):
        if existing.type == method.type:
            methods[index] = method
            break
    else:
        methods.append(method)

    return TwoFactorConfig(
        version=CONFIG_VERSION, default_method=config.default_method, methods=methods
    )


def remove_method(
    config: TwoFactorConfig, method_type: MethodType
) -> Optional[TwoFactorConfig]:
    """
    Disable ``method_type``.

    Returns None when no methods remain. When the default is removed, the first
    remaining method becomes the new default.
    """
    methods = [method for method in config.methods if method.type != method_type]
    if not methods:
        return None

    default_method = config.default_method
    if default_method == method_type:
        default_method = methods[0].type

    return TwoFactorConfig(
        version=CONFIG_VERSION, default_method=default_method, methods=methods
    )


def get_method_config(
    config: Optional[TwoFactorConfig], method_type: MethodType
) -> Optional[MethodConfig]:
    if config is None:
        return None
    return next(
        (method for method in config.methods if method.type == method_type), None
    )


def get_enabled_methods(config: Optional[TwoFactorConfig]) -> List[MethodType]:
    if config is None:
        return []
    return [method.type for method in config.methods]


def with_default_method(
    config: TwoFactorConfig, method_type: MethodType
) -> TwoFactorConfig:
    """Return ``config`` with a new default. Raises ValueError if the method is not enabled."""
    if method_type not in get_enabled_methods(config):
        raise ValueError(f"{method_type} is not enabled")
    return config.model_copy(update={"default_method": method_type})
