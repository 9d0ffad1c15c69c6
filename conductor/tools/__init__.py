# conductor/tools package: command-line entry points.
