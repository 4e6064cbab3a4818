"""Import the real packages before pytest's importlib mode loads the
per-package conftests, so it does not register the same-named top-level
directories (``billing_api/``, ...) as empty namespace parents."""

import billing_api  # noqa: F401
import billing_cli  # noqa: F401
import billing_engine  # noqa: F401
