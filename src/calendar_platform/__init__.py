# Platform glue: configuration, logging, sessions, authentication, HTTP app
