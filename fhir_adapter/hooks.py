"""Behavior modifiers run around each interaction

Modifiers are applied in configured order.  ``after_receive_request`` sees
the inbound body of create, update and validate interactions;
``before_send_response`` sees each outbound resource, bundles included.
"""
from abc import ABC
import logging

logger = logging.getLogger(__name__)


class BehaviorModifier(ABC):
    """Abstract interface, implemented by each request/response interceptor"""

    def can_apply(self, interaction, resource):
        """Return True when this modifier applies to the interaction and resource

        :param interaction: the ``Interaction`` being served
        :param resource: the external resource about to be processed, may be None
        """
        return True

    def after_receive_request(self, interaction, kind, resource, context):
        """Inspect or transform an inbound resource before it is mapped

        :returns: the resource to continue with
        """
        return resource

    def before_send_response(self, interaction, kind, resource, context):
        """Inspect or transform an outbound resource

        :returns: the resource to send
        """
        return resource


class HookChain:
    """Immutable ordered sequence of behavior modifiers"""

    def __init__(self, modifiers=()):
        self._modifiers = tuple(modifiers)

    def after_receive_request(self, interaction, kind, resource, context):
        for modifier in self._modifiers:
            if modifier.can_apply(interaction, resource):
                logger.debug(
                    "%s after_receive_request on %s %s",
                    type(modifier).__name__, interaction.value, kind)
                resource = modifier.after_receive_request(interaction, kind, resource, context)
        return resource

    def before_send_response(self, interaction, kind, resource, context):
        for modifier in self._modifiers:
            if modifier.can_apply(interaction, resource):
                logger.debug(
                    "%s before_send_response on %s %s",
                    type(modifier).__name__, interaction.value, kind)
                resource = modifier.before_send_response(interaction, kind, resource, context)
        return resource
