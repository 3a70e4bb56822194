"""Portal access: browser login, order API client and artifact checks."""
