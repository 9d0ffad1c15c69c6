# conductor/config package: runtime.yaml loading and environment overrides.
