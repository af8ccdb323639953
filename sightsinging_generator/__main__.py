"""Entry point wrapper for ``python -m sightsinging_generator``.

When the package is executed as a module the code here simply forwards
execution to :func:`sightsinging_generator.main`.  Keeping the logic in a
single function means the behaviour is identical whether the user runs
``python -m sightsinging_generator`` or the installed
``sightsinging-generator`` console script.

Example
-------
The following invocation writes a four-measure C major exercise::

    python -m sightsinging_generator --key C --mode major --timesig 4/4 \
        --measures 4 --seed 7 --output exercise.mid
"""

from . import main

if __name__ == "__main__":
    main()
