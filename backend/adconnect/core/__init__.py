# Core infrastructure: configuration-bound helpers, security, retry, OAuth.
