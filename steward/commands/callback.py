"""
steward callback - Feed one inbound callback to the dispatcher.

Either a JSON payload ({action, subject_id, actor, message?, extra?}) or a
button's raw callback_data plus the clicking actor.
"""

import json

from steward.callbacks import CallbackDispatcher, CallbackPayload
from steward.lib.constants import EXIT_OK
from steward.lib.errors import ValidationError
from steward.lib.output import print_json


def cmd_callback(args, ctx) -> int:
    if args.data:
        payload = CallbackPayload.from_callback_data(
            args.data, args.actor, ctx.config.callbacks.namespace, message=args.message or "",
        )
    else:
        try:
            data = json.loads(args.payload)
        except json.JSONDecodeError as e:
            raise ValidationError("callback", f"--payload is not valid JSON: {e}") from None
        if not isinstance(data, dict):
            raise ValidationError("callback", "--payload must be a JSON object")
        payload = CallbackPayload.parse(data)

    result = CallbackDispatcher.from_context(ctx).dispatch(payload)
    print_json(result)
    return EXIT_OK
